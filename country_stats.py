"""
DB4S Country Stats Generator
Daily active users per country, from the download log to SQLite

Description: Reads the PostgreSQL download log, counts the current release
             update checks for each country on each day, and stores the
             results in a local SQLite database used for the DB4S statistics
             reports.
"""

#!/usr/bin/env python
# coding: utf-8

import logging
from collections import namedtuple
from contextlib import contextmanager
from datetime import datetime, time, timedelta, timezone
from sys import exit

import pandas as pd
from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    Table,
    Text,
    create_engine,
    func,
    select,
)
from sqlalchemy.engine import URL
from sqlalchemy.exc import SQLAlchemyError

from country_stats_config import load_config
from country_stats_errors import (
    CountryStatsError,
    InsertCountError,
    ReportingWindowError,
)


logger = logging.getLogger(__name__)

OUTPUT_FILE = "db4s_country_stats.sqlite"
APPLICATION_NAME = "db4s_country_stats_generator"

# Request path logged for the "is there a new release?" check
CURRENT_RELEASE = "/currentrelease"
UNKNOWN_COUNTRY = "ZZZ"

# Seconds to wait for a pooled source connection
POOL_TIMEOUT = 5

ONE_DAY = timedelta(days=1)


# Source side: the download log lives in PostgreSQL and is only ever read
source_metadata = MetaData()

download_log = Table(
    "download_log",
    source_metadata,
    Column("request", Text),
    Column("request_time", DateTime(timezone=True)),
    Column("client_country", Text),
)

# Output side
output_metadata = MetaData()

active_users = Table(
    "active_users",
    output_metadata,
    Column("date", Text),
    Column("country", Text),
    Column("users", Integer),
    Index("active_users-date_idx", "date"),
)


class ReportingWindow(namedtuple("ReportingWindow", ["start_date", "end_date"])):
    """Half open range of calendar days, [start_date, end_date)"""

    def days(self):
        day = self.start_date
        while day < self.end_date:
            yield day
            day += ONE_DAY


def qualifying_records():
    """
    WHERE clauses selecting current release checks with a usable country

    Returns:
        list: SQLAlchemy column expressions
    """
    return [
        download_log.c.request == CURRENT_RELEASE,
        download_log.c.client_country.isnot(None),
        download_log.c.client_country != UNKNOWN_COUNTRY,
        download_log.c.client_country != "",
    ]


def utc_day(timestamp):
    """Calendar day (UTC) of a timestamp, naive values are taken as UTC"""
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc)
    return timestamp.date()


def create_source_engine(config):
    """
    Create SQLAlchemy engine for the PostgreSQL source database

    TLS is requested without certificate verification when config.ssl is set.

    Args:
        config (PgConfig): Connection settings

    Returns:
        Engine: SQLAlchemy engine object
    """
    connection_url = URL.create(
        "postgresql+psycopg2",
        username=config.username,
        password=config.password,
        host=config.server,
        port=config.port,
        database=config.database,
    )

    return create_engine(
        connection_url,
        pool_size=config.num_connections,
        max_overflow=0,
        pool_timeout=POOL_TIMEOUT,
        connect_args={
            "sslmode": "require" if config.ssl else "disable",
            "options": "-c timezone=UTC",
            "application_name": APPLICATION_NAME,
        },
    )


@contextmanager
def source_connection(config):
    """Connection pool to the source database, disposed on exit"""
    engine = create_source_engine(config)
    try:
        yield engine
    finally:
        try:
            engine.dispose()
        except SQLAlchemyError as e:
            logger.error("Error closing the PostgreSQL connection pool: %s", e)


@contextmanager
def read_only_transaction(engine):
    """
    Check out one connection and open a transaction on it

    Nothing is ever written to the source, so the transaction is rolled back
    on every exit path.

    Args:
        engine (Engine): Source database engine

    Yields:
        Connection: Connection with an open transaction
    """
    conn = engine.connect()
    try:
        trans = conn.begin()
        try:
            yield conn
        finally:
            try:
                trans.rollback()
            except SQLAlchemyError as e:
                logger.error("Error rolling back the PostgreSQL transaction: %s", e)
    finally:
        try:
            conn.close()
        except SQLAlchemyError as e:
            logger.error("Error closing the PostgreSQL connection: %s", e)


class OutputStore:
    """The local SQLite database holding the active_users table"""

    def __init__(self, path=OUTPUT_FILE):
        self.path = str(path)
        self.engine = create_engine(URL.create("sqlite", database=self.path))
        try:
            self.conn = self.engine.connect()
        except SQLAlchemyError:
            self.engine.dispose()
            raise
        self._insert = active_users.insert()

    def reset(self):
        """Drop the active_users table if present and create it afresh"""
        active_users.drop(self.conn, checkfirst=True)
        active_users.create(self.conn)
        self.conn.commit()

    def insert_day(self, day, counts):
        """
        Save one day of country counts

        The rows are committed together once all of them are in, so a
        failure part way through leaves the table as it was after the
        previous day.

        Args:
            day (date): Day the counts belong to
            counts (dict): Country code to user count

        Returns:
            int: Number of rows inserted
        """
        date_text = day.strftime("%Y-%m-%d")
        for country, users in counts.items():
            result = self.conn.execute(
                self._insert,
                {"date": date_text, "country": country, "users": users},
            )
            if result.rowcount != 1:
                raise InsertCountError(result.rowcount)
        self.conn.commit()
        return len(counts)

    def close(self):
        try:
            self.conn.close()
        finally:
            self.engine.dispose()


@contextmanager
def open_output_store(path=OUTPUT_FILE):
    """Open (creating if needed) the SQLite output file, closed on exit"""
    store = OutputStore(path)
    try:
        yield store
    finally:
        try:
            store.close()
        except SQLAlchemyError as e:
            logger.error("Error closing the SQLite database: %s", e)


def resolve_reporting_window(conn):
    """
    Find the range of days holding qualifying download log entries

    Args:
        conn (Connection): Source connection inside the read only transaction

    Returns:
        ReportingWindow: Day of the first entry up to, but excluding, the day
            after the last entry
    """
    request_time = download_log.c.request_time
    bounds = []
    for order, label in ((request_time.asc(), "start"), (request_time.desc(), "end")):
        query = (
            select(request_time)
            .where(request_time.isnot(None), *qualifying_records())
            .order_by(order)
            .limit(1)
        )
        timestamp = conn.execute(query).scalar()
        if timestamp is None:
            raise ReportingWindowError(
                f"error when retrieving the {label} date for active users: "
                "no qualifying download log entries"
            )
        bounds.append(utc_day(timestamp))

    return ReportingWindow(bounds[0], bounds[1] + ONE_DAY)


def fetch_daily_counts(conn, day):
    """
    Count the qualifying entries per country for one day

    Args:
        conn (Connection): Source connection inside the read only transaction
        day (date): Day to count

    Returns:
        dict: Country code to user count, in ascending country code order
    """
    start = datetime.combine(day, time.min)
    end = start + ONE_DAY

    query = (
        select(
            download_log.c.client_country,
            func.count(download_log.c.client_country).label("users"),
        )
        .where(
            # [day, day + 1), a request at midnight counts for its own day
            download_log.c.request_time >= start,
            download_log.c.request_time < end,
            *qualifying_records(),
        )
        .group_by(download_log.c.client_country)
        .order_by(download_log.c.client_country.asc())
    )

    df_counts = pd.read_sql_query(query, conn)
    return {
        country: int(users)
        for country, users in zip(df_counts["client_country"], df_counts["users"])
    }


def aggregate_daily_counts(conn, store, window, debug=False):
    """
    Generate the country counts for every day of the window and store them

    Args:
        conn (Connection): Source connection inside the read only transaction
        store (OutputStore): Destination for the counts
        window (ReportingWindow): Days to process
        debug (bool): Print progress for each day

    Returns:
        int: Total number of rows inserted
    """
    total = 0
    for day in window.days():
        if debug:
            print(f"Generating active user data for: {day:%Y-%m-%d}")

        counts = fetch_daily_counts(conn, day)

        if debug:
            print(f"Inserting into SQLite database for: {day:%Y-%m-%d}")

        total += store.insert_day(day, counts)
    return total


def export_active_users(conn, store, debug=False):
    """Resolve the reporting window, then fill the output store day by day"""
    window = resolve_reporting_window(conn)

    if debug:
        print(f"Start date is: {window.start_date:%Y-%m-%d}")
        print(f"End date is: {window.end_date:%Y-%m-%d} (exclusive)")

    return aggregate_daily_counts(conn, store, window, debug)


def run(config, output_path=OUTPUT_FILE, debug=None):
    """
    Run the whole job against the configured source database

    Args:
        config (PgConfig): Connection settings
        output_path (str): SQLite file to (re)create
        debug (bool): Print progress, defaults to config.debug

    Returns:
        int: Total number of rows inserted
    """
    if debug is None:
        debug = config.debug

    with source_connection(config) as engine, read_only_transaction(engine) as conn:
        if debug:
            print(f"Connected to PostgreSQL server: {config.server}")

        with open_output_store(output_path) as store:
            store.reset()

            if debug:
                print(f"Created country stats database: {output_path}")

            return export_active_users(conn, store, debug)


def main():
    """Main execution function"""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = load_config()
        if config.debug:
            print("=" * 60)
            print("DB4S Country Stats Generator")
            print("=" * 60)
        total = run(config)
    except (CountryStatsError, SQLAlchemyError, OSError) as e:
        logger.error("%s", e)
        exit(1)

    if config.debug:
        print("\n" + "=" * 60)
        print("Processing complete!")
        print(f"Rows inserted: {total}")
        print("=" * 60)


if __name__ == "__main__":
    main()
