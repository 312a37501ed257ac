from dataclasses import dataclass
from decimal import Decimal

DEFAULT_DB_URL = 'sqlite:///library_system.db'
DEFAULT_LOAN_PERIOD_DAYS = 14
DEFAULT_FINE_PER_DAY = Decimal('1.00')
DEFAULT_LOG_PATH = 'library_ledger.log'


@dataclass
class LedgerSettings:
    db_url: str = DEFAULT_DB_URL
    loan_period_days: int = DEFAULT_LOAN_PERIOD_DAYS
    fine_per_day: Decimal = DEFAULT_FINE_PER_DAY
    log_path: str = DEFAULT_LOG_PATH


def settings_from_args(args):
    """build settings from parsed command line arguments"""
    return LedgerSettings(
        db_url=args.db_url,
        loan_period_days=args.loan_period,
        fine_per_day=Decimal(str(args.fine_per_day)),
        log_path=args.log_file,
    )
