"""Exceptions raised by the country stats generator"""


class CountryStatsError(Exception):
    """Base class for all fatal errors of the job"""


class ConfigError(CountryStatsError):
    """The configuration file is missing, unreadable or malformed"""


class ReportingWindowError(CountryStatsError):
    """The reporting window can't be determined from the source data"""


class InsertCountError(CountryStatsError):
    """An insert into the output store didn't land exactly one row"""

    def __init__(self, rowcount):
        super().__init__(
            f"Inserting into SQLite database returned '{rowcount}' instead of 1"
        )
        self.rowcount = rowcount
