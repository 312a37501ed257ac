"""
Circulation Ledger - issuing, returning and overdue tracking of loans.

Loan life cycle:

    ISSUED --return--> RETURNED
    ISSUED --due date passed, sweep--> OVERDUE --return--> RETURNED

A loan counts as overdue when its status is OVERDUE, or when it is still
ISSUED and its due date lies before today. The OVERDUE status is a cached
form of that comparison which reconcile_overdue refreshes.
"""

import logging
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import and_, func, or_, select, update

from database_models import Book, Loan, LoanStatus, OUTSTANDING_STATUSES, User
from library_clock import SystemClock
from library_errors import ErrorKind, Result
from library_settings import DEFAULT_FINE_PER_DAY, DEFAULT_LOAN_PERIOD_DAYS
import validators

logger = logging.getLogger(__name__)

CENTS = Decimal('0.01')
NO_FINE = Decimal('0.00')


class CirculationLedger:

    def __init__(self, database, catalog, members, clock=None,
                 loan_period_days=DEFAULT_LOAN_PERIOD_DAYS, fine_per_day=DEFAULT_FINE_PER_DAY):
        self.database = database
        self.catalog = catalog
        self.members = members
        self.clock = clock or SystemClock()
        self.loan_period_days = loan_period_days
        self.fine_per_day = Decimal(str(fine_per_day))

    # ---- overdue predicate and fines ----

    def _overdue_clause(self, today):
        return or_(
            Loan.status == LoanStatus.OVERDUE,
            and_(Loan.status == LoanStatus.ISSUED, Loan.due_date < today),
        )

    def is_overdue(self, loan):
        if loan.status == LoanStatus.OVERDUE:
            return True
        return loan.status == LoanStatus.ISSUED and loan.due_date < self.clock.now()

    def days_overdue(self, loan):
        if not self.is_overdue(loan):
            return 0
        return max(0, (self.clock.now() - loan.due_date).days)

    def calculate_fine(self, loan, fine_per_day=None):
        """Fine accrued by a loan as of today; zero unless the loan is overdue."""
        rate = self.fine_per_day if fine_per_day is None else Decimal(str(fine_per_day))
        fine = (self.days_overdue(loan) * rate).quantize(CENTS, rounding=ROUND_HALF_UP)
        return max(NO_FINE, fine)

    # ---- state transitions ----

    def issue_loan(self, user_id, book_id, loan_period_days=None):
        """Lend one copy of a book to a user.

        The availability check and the decrement are a single conditional
        UPDATE; losing that race reports NOT_AVAILABLE and nothing is written.
        """
        period = self.loan_period_days if loan_period_days is None else loan_period_days
        issue_date = self.clock.now()
        if period is None or period < 1:
            return Result.failure(ErrorKind.INVALID_RANGE, f"loan period must be at least one day, got {period}")
        due_date = issue_date + timedelta(days=period)
        if not validators.is_valid_date_range(issue_date, due_date):
            return Result.failure(ErrorKind.INVALID_RANGE, "due date must be after issue date")

        with self.database.session_scope() as session:
            if not self.members.exists(user_id, session=session):
                return Result.failure(ErrorKind.NOT_FOUND, f"user {user_id} not found")
            book = session.get(Book, book_id)
            if book is None:
                return Result.failure(ErrorKind.NOT_FOUND, f"book {book_id} not found")
            if book.available_copies <= 0:
                logger.warning(f"Book {book_id} has no copies available for user {user_id}")
                return Result.failure(ErrorKind.NOT_AVAILABLE, f"no copies of book {book_id} available")

            if not self.catalog.adjust_availability(book_id, -1, session=session):
                session.rollback()
                logger.warning(f"Lost the last copy of book {book_id} to a concurrent issue")
                return Result.failure(ErrorKind.NOT_AVAILABLE, f"no copies of book {book_id} available")

            # the borrower may have been deleted since the first check
            if not self.members.exists(user_id, session=session, lock=True):
                session.rollback()
                return Result.failure(ErrorKind.NOT_FOUND, f"user {user_id} not found")

            loan = Loan(
                user_id=user_id,
                book_id=book_id,
                issue_date=issue_date,
                due_date=due_date,
                status=LoanStatus.ISSUED,
                fine_amount=NO_FINE,
            )
            session.add(loan)
            session.flush()
            loan_id = loan.loan_id

        logger.info(f"Issued loan {loan_id}: book {book_id} to user {user_id}, due {due_date}")
        return Result.success(loan_id)

    def return_loan(self, loan_id, fine_per_day=None):
        """Close a loan, settle its fine and put the copy back on the shelf."""
        today = self.clock.now()
        with self.database.session_scope() as session:
            loan = session.get(Loan, loan_id)
            if loan is None:
                return Result.failure(ErrorKind.NOT_FOUND, f"loan {loan_id} not found")
            if loan.status == LoanStatus.RETURNED:
                logger.warning(f"Loan {loan_id} was already returned on {loan.return_date}")
                return Result.failure(ErrorKind.ALREADY_RETURNED, f"loan {loan_id} already returned")

            fine = self.calculate_fine(loan, fine_per_day)
            closed = session.execute(
                update(Loan)
                .where(Loan.loan_id == loan_id, Loan.status.in_(OUTSTANDING_STATUSES))
                .values(status=LoanStatus.RETURNED, return_date=today, fine_amount=fine)
                .execution_options(synchronize_session=False)
            ).rowcount
            if closed != 1:
                session.rollback()
                logger.warning(f"Loan {loan_id} was returned concurrently")
                return Result.failure(ErrorKind.ALREADY_RETURNED, f"loan {loan_id} already returned")

            if not self.catalog.adjust_availability(loan.book_id, 1, session=session):
                logger.warning(f"Book {loan.book_id} of loan {loan_id} no longer in catalog")

        logger.info(f"Returned loan {loan_id} on {today}, fine {fine}")
        return Result.success(fine)

    def reconcile_overdue(self):
        """Mark ISSUED loans past their due date as OVERDUE; returns how many changed."""
        today = self.clock.now()
        with self.database.session_scope() as session:
            changed = session.execute(
                update(Loan)
                .where(Loan.status == LoanStatus.ISSUED, Loan.due_date < today)
                .values(status=LoanStatus.OVERDUE)
                .execution_options(synchronize_session=False)
            ).rowcount
        if changed:
            logger.info(f"Overdue sweep on {today}: {changed} loans now overdue")
        else:
            logger.debug(f"Overdue sweep on {today}: nothing to update")
        return changed

    # ---- queries ----

    def _loans(self, *criteria):
        stmt = select(Loan).where(*criteria).order_by(Loan.issue_date.desc(), Loan.loan_id.desc())
        with self.database.session_scope() as session:
            return list(session.scalars(stmt).all())

    def get_loan(self, loan_id):
        with self.database.session_scope() as session:
            return session.get(Loan, loan_id)

    def all_loans(self):
        return self._loans()

    def active_loans(self):
        return self._loans(Loan.status == LoanStatus.ISSUED)

    def overdue_loans(self):
        return self._loans(self._overdue_clause(self.clock.now()))

    def outstanding_loans(self):
        return self._loans(Loan.status.in_(OUTSTANDING_STATUSES))

    def loans_for_user(self, user_id):
        return self._loans(Loan.user_id == user_id)

    def loans_for_book(self, book_id):
        return self._loans(Loan.book_id == book_id)

    def search_loans(self, term):
        pattern = f"%{term.strip()}%"
        stmt = (select(Loan)
                .outerjoin(User, User.user_id == Loan.user_id)
                .outerjoin(Book, Book.book_id == Loan.book_id)
                .where(or_(User.username.ilike(pattern),
                           Book.title.ilike(pattern),
                           Book.author.ilike(pattern)))
                .order_by(Loan.issue_date.desc(), Loan.loan_id.desc()))
        with self.database.session_scope() as session:
            return list(session.scalars(stmt).all())

    def _outstanding_count(self, column, value):
        stmt = (select(func.count(Loan.loan_id))
                .where(column == value, Loan.status.in_(OUTSTANDING_STATUSES)))
        with self.database.session_scope() as session:
            return session.scalar(stmt)

    def outstanding_count_for_user(self, user_id):
        return self._outstanding_count(Loan.user_id, user_id)

    def outstanding_count_for_book(self, book_id):
        return self._outstanding_count(Loan.book_id, book_id)

    def verify_invariant(self):
        """Books whose available count disagrees with their outstanding loans.

        Maps book id to (expected, actual) available copies; empty when the
        catalog and the ledger agree.
        """
        on_loan = (select(Loan.book_id, func.count(Loan.loan_id))
                   .where(Loan.status.in_(OUTSTANDING_STATUSES))
                   .group_by(Loan.book_id))
        with self.database.session_scope() as session:
            counts = dict(session.execute(on_loan).all())
            books = session.scalars(select(Book)).all()
            mismatches = {}
            for book in books:
                expected = book.total_copies - counts.get(book.book_id, 0)
                if expected != book.available_copies:
                    mismatches[book.book_id] = (expected, book.available_copies)

        if mismatches:
            logger.error(f"Availability does not match loans for books {sorted(mismatches)}")
        return mismatches
