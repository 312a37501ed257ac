"""
Library Circulation Ledger - administrative command line
Schema setup, catalog CSV import (cleaned with pandas), overdue sweep,
dashboard summary and CSV listing exports.
"""

import argparse
import logging
import sys

import numpy as np
import pandas as pd

from catalog_store import CatalogStore
from circulation_ledger import CirculationLedger
from database_models import LibraryDatabase, UserRole
from library_clock import SystemClock
from library_errors import ErrorKind, SchemaInitializationError, StoreUnavailableError
from library_reports import LibraryReports
from library_settings import (
    DEFAULT_DB_URL,
    DEFAULT_FINE_PER_DAY,
    DEFAULT_LOAN_PERIOD_DAYS,
    DEFAULT_LOG_PATH,
    settings_from_args,
)
from membership_store import MembershipStore
import validators

logger = logging.getLogger(__name__)

CATALOG_COLUMNS = ['Title', 'Author', 'ISBN', 'Category', 'Publisher', 'Year', 'Copies']


def configure_logging(log_path=DEFAULT_LOG_PATH, level=logging.INFO):
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_path),
            logging.StreamHandler()
        ]
    )


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(
        description='Library Circulation Ledger administration'
    )

    parser.add_argument(
        '--db-url',
        default=DEFAULT_DB_URL,
        help=f'SQLAlchemy database URL (default: {DEFAULT_DB_URL})'
    )

    parser.add_argument(
        '--log-file',
        default=DEFAULT_LOG_PATH,
        help=f'Path for the log file (default: {DEFAULT_LOG_PATH})'
    )

    parser.add_argument(
        '--loan-period',
        type=int,
        default=DEFAULT_LOAN_PERIOD_DAYS,
        help=f'Number of days allowed for borrowing (default: {DEFAULT_LOAN_PERIOD_DAYS})'
    )

    parser.add_argument(
        '--fine-per-day',
        default=str(DEFAULT_FINE_PER_DAY),
        help=f'Fine charged per overdue day (default: {DEFAULT_FINE_PER_DAY})'
    )

    commands = parser.add_subparsers(dest='command', required=True)

    init_db = commands.add_parser('init-db', help='Create the schema')
    init_db.add_argument('--admin-username', help='Create an administrator with this username')
    init_db.add_argument('--admin-password', help='Credential for the administrator')

    commands.add_parser('reset-db', help='Drop and recreate all tables')

    import_books = commands.add_parser('import-books', help='Clean a catalog CSV and add its books')
    import_books.add_argument('books_input', help='Path to books CSV file')

    commands.add_parser('reconcile', help='Mark loans past their due date as overdue')
    commands.add_parser('summary', help='Log the dashboard figures')

    export = commands.add_parser('export', help='Write a listing to CSV')
    export.add_argument('listing', choices=['books', 'users', 'loans', 'overdue', 'categories'])
    export.add_argument('output', help='Path for the CSV output')

    return parser.parse_args(argv)


def load_catalog_csv(books_path):
    books_df = pd.read_csv(books_path, dtype=str)
    missing = [c for c in ('Title', 'Author') if c not in books_df.columns]
    if missing:
        raise ValueError(f"Catalog file {books_path} is missing columns: {missing}")
    for column in CATALOG_COLUMNS:
        if column not in books_df.columns:
            books_df[column] = np.nan
    return books_df


def analyse_catalog_quality(books_df):

    issues = []

    logger.info("Starting catalog quality analysis")
    logger.info(f"Catalog data: Total rows: {len(books_df)}")
    logger.warning(f"Catalog - Rows with NaN in Title: {books_df['Title'].isna().sum()}")
    logger.warning(f"Catalog - Rows with NaN in Author: {books_df['Author'].isna().sum()}")
    logger.warning(f"Catalog - Completely empty rows: {books_df.isna().all(axis=1).sum()}")

    for idx, row in books_df.iterrows():
        if pd.notna(row['ISBN']) and not validators.is_valid_isbn(str(row['ISBN']).strip('"')):
            issues.append((idx, row['ISBN'], 'invalid ISBN'))
            logger.error(f"Invalid ISBN found - Row {idx}: {row['ISBN']}")
        copies = pd.to_numeric(row['Copies'], errors='coerce')
        if pd.notna(copies) and copies < 0:
            issues.append((idx, row['Copies'], 'negative copy count'))
            logger.error(f"Invalid copy count found - Row {idx}: {row['Copies']}")

    duplicated = books_df['ISBN'].dropna().duplicated()
    if duplicated.any():
        logger.error(f"Duplicate ISBNs in catalog file: {sorted(set(books_df['ISBN'].dropna()[duplicated]))}")
        issues.append(('duplicate_isbn', int(duplicated.sum())))

    logger.info(f"Catalog quality analysis complete. Total issues found: {len(issues)}")
    return issues


def clean_catalog_data(books_df):

    logger.info("Starting catalog data cleaning")

    # remove completely empty rows
    original_count = len(books_df)
    books_df = books_df.dropna(how='all')
    removed = original_count - len(books_df)
    if removed > 0:
        logger.info(f"Removed {removed} completely empty rows from catalog data")

    # remove rows without a title or author
    before_nan_removal = len(books_df)
    books_df = books_df.dropna(subset=['Title', 'Author']).copy()
    removed_nan = before_nan_removal - len(books_df)
    if removed_nan > 0:
        logger.info(f"Removed {removed_nan} rows with missing Title or Author values")

    def clean_text(value):
        if pd.isna(value):
            return None
        value = validators.sanitize(str(value).strip().strip('"'))
        return value or None

    for column in ('Title', 'Author', 'ISBN', 'Category', 'Publisher'):
        books_df[column] = books_df[column].apply(clean_text)
    books_df = books_df.dropna(subset=['Title', 'Author']).copy()

    def clean_isbn(isbn):
        if pd.isna(isbn):
            return None
        if not validators.is_valid_isbn(isbn):
            logger.warning(f"Dropped invalid ISBN: {isbn}")
            return None
        return validators.normalize_isbn(isbn)

    books_df['ISBN'] = books_df['ISBN'].apply(clean_isbn)

    # copies default to one; negative counts are rejected outright
    books_df['Copies'] = pd.to_numeric(books_df['Copies'], errors='coerce').fillna(1)
    negative = books_df['Copies'] < 0
    if negative.any():
        logger.warning(f"Removed {int(negative.sum())} rows with negative copy counts")
        books_df = books_df[~negative].copy()
    books_df['Copies'] = books_df['Copies'].astype(int)

    years = pd.to_numeric(books_df['Year'], errors='coerce')
    valid_year = years.apply(lambda y: pd.notna(y) and validators.is_valid_year(int(y)))
    books_df['Year'] = np.where(valid_year, years, np.nan)
    books_df['Year'] = books_df['Year'].astype('Int64')

    has_isbn = books_df['ISBN'].notna()
    duplicates = has_isbn & books_df['ISBN'].duplicated(keep='first')
    if duplicates.any():
        logger.warning(f"Removed {int(duplicates.sum())} rows with duplicate ISBNs")
        books_df = books_df[~duplicates].copy()

    books_df = books_df.reset_index(drop=True)
    logger.info(f"Catalog cleaning complete. {len(books_df)} valid book records, "
                f"{int(books_df['Copies'].sum())} copies")
    return books_df


def import_catalog(books_df, catalog, actor=None):
    """adds cleaned rows to the catalog, returns (created, skipped)"""

    logger.info(f"Importing {len(books_df)} books into the catalog")
    created = 0
    skipped = 0

    def value(row, column):
        return None if pd.isna(row[column]) else row[column]

    for _, row in books_df.iterrows():
        year = value(row, 'Year')
        result = catalog.create(
            title=row['Title'],
            author=row['Author'],
            total_copies=int(row['Copies']),
            isbn=value(row, 'ISBN'),
            category=value(row, 'Category'),
            publisher=value(row, 'Publisher'),
            publication_year=int(year) if year is not None else None,
            actor=actor,
        )
        if result:
            created += 1
        else:
            skipped += 1
            logger.warning(f"Skipped '{row['Title']}': {result.error.value} - {result.message}")

    logger.info(f"Catalog import complete: {created} added, {skipped} skipped")
    return created, skipped


def build_services(settings, clock=None):
    database = LibraryDatabase(settings.db_url)
    catalog = CatalogStore(database)
    members = MembershipStore(database)
    ledger = CirculationLedger(
        database, catalog, members,
        clock=clock or SystemClock(),
        loan_period_days=settings.loan_period_days,
        fine_per_day=settings.fine_per_day,
    )
    reports = LibraryReports(catalog, members, ledger)
    return database, catalog, members, ledger, reports


def run_init_db(args, database, members):
    database.initialize_schema()
    if args.admin_username:
        if not args.admin_password:
            logger.error("--admin-password is required with --admin-username")
            return 2
        result = members.create(args.admin_username, args.admin_password, role=UserRole.ADMIN)
        if not result and result.error != ErrorKind.DUPLICATE:
            logger.error(f"Could not create administrator: {result.message}")
            return 1
        if result:
            logger.info(f"Administrator {args.admin_username} created")
        else:
            logger.info(f"Administrator {args.admin_username} already exists")
    return 0


def run_export(args, reports):
    listings = {
        'books': reports.books_frame,
        'users': reports.users_frame,
        'loans': reports.loans_frame,
        'overdue': reports.overdue_frame,
        'categories': reports.category_frame,
    }
    frame = listings[args.listing]()
    return 0 if reports.export_csv(frame, args.output) else 1


def main(argv=None):
    args = parse_arguments(argv)
    configure_logging(args.log_file)
    settings = settings_from_args(args)

    logger.info("=" * 60)
    logger.info(f"Library Circulation Ledger: {args.command}")
    logger.info("=" * 60)

    database, catalog, members, ledger, reports = build_services(settings)
    try:
        if args.command == 'init-db':
            return run_init_db(args, database, members)

        if args.command == 'reset-db':
            database.reset_schema()
            return 0

        database.initialize_schema()

        if args.command == 'import-books':
            books_df = load_catalog_csv(args.books_input)
            logger.info(f"Data loaded successfully: {len(books_df)} catalog records")
            analyse_catalog_quality(books_df)
            books_df = clean_catalog_data(books_df)
            created, skipped = import_catalog(books_df, catalog)
            return 0 if created or not skipped else 1

        if args.command == 'reconcile':
            changed = ledger.reconcile_overdue()
            logger.info(f"{changed} loans marked overdue")
            return 0

        if args.command == 'summary':
            for name, value in reports.summary().items():
                logger.info(f"  {name}: {value}")
            return 0

        if args.command == 'export':
            return run_export(args, reports)

    except (SchemaInitializationError, StoreUnavailableError) as e:
        logger.error(f"Aborting: {e}")
        return 1
    finally:
        database.dispose()

    return 2


if __name__ == "__main__":
    sys.exit(main())
