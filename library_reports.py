"""
Library Reports - read-only figures and listings for dashboards and exports.

Nothing here mutates the stores. A read that fails degrades to UNAVAILABLE
(for summary figures) or None (for listings) so a dashboard can still render
whatever did load.
"""

import logging
from decimal import Decimal

import numpy as np
import pandas as pd
from sqlalchemy.exc import SQLAlchemyError

from database_models import LoanStatus, UserRole
from library_errors import LibraryStoreError

logger = logging.getLogger(__name__)

UNAVAILABLE = 'unavailable'
UNCATEGORIZED = 'Uncategorized'

BOOK_COLUMNS = ['book_id', 'title', 'author', 'isbn', 'category', 'publisher',
                'publication_year', 'total_copies', 'available_copies', 'on_loan']
USER_COLUMNS = ['user_id', 'username', 'role', 'email', 'phone', 'outstanding_loans']
LOAN_COLUMNS = ['loan_id', 'user_id', 'username', 'book_id', 'title', 'author', 'issue_date',
                'due_date', 'return_date', 'status', 'display_status', 'fine_amount']
OVERDUE_COLUMNS = ['loan_id', 'username', 'title', 'due_date', 'days_overdue', 'accrued_fine']

READ_ERRORS = (LibraryStoreError, SQLAlchemyError)


class LibraryReports:

    def __init__(self, catalog, members, ledger):
        self.catalog = catalog
        self.members = members
        self.ledger = ledger

    def _figures(self, keys, compute):
        try:
            return compute()
        except READ_ERRORS as e:
            logger.error(f"Could not load {', '.join(keys)}: {e}", exc_info=True)
            return {key: UNAVAILABLE for key in keys}

    def _catalog_figures(self):
        books = self.catalog.list()
        return {
            'total_titles': len(books),
            'total_copies': sum(b.total_copies for b in books),
            'available_copies': sum(b.available_copies for b in books),
            'available_titles': sum(1 for b in books if b.available_copies > 0),
        }

    def _member_figures(self):
        users = self.members.list()
        return {
            'total_users': len(users),
            'admin_users': sum(1 for u in users if u.role == UserRole.ADMIN),
        }

    def _loan_figures(self):
        loans = self.ledger.all_loans()
        returned = [l for l in loans if l.status == LoanStatus.RETURNED]
        return {
            'active_loans': sum(1 for l in loans if l.status == LoanStatus.ISSUED),
            'overdue_loans': sum(1 for l in loans if self.ledger.is_overdue(l)),
            'returned_loans': len(returned),
            'fines_collected': sum((Decimal(l.fine_amount) for l in returned), Decimal('0.00')),
        }

    def summary(self):
        """dashboard counts; each group falls back to UNAVAILABLE on its own"""
        figures = {}
        figures.update(self._figures(
            ['total_titles', 'total_copies', 'available_copies', 'available_titles'],
            self._catalog_figures))
        figures.update(self._figures(['total_users', 'admin_users'], self._member_figures))
        figures.update(self._figures(
            ['active_loans', 'overdue_loans', 'returned_loans', 'fines_collected'],
            self._loan_figures))
        return figures

    def _listing(self, name, build):
        try:
            return build()
        except READ_ERRORS as e:
            logger.error(f"Could not load {name} listing: {e}", exc_info=True)
            return None

    def books_frame(self, category=None):
        def build():
            rows = [{
                'book_id': b.book_id,
                'title': b.title,
                'author': b.author,
                'isbn': b.isbn,
                'category': b.category,
                'publisher': b.publisher,
                'publication_year': b.publication_year,
                'total_copies': b.total_copies,
                'available_copies': b.available_copies,
                'on_loan': b.total_copies - b.available_copies,
            } for b in self.catalog.list(category=category)]
            return pd.DataFrame(rows, columns=BOOK_COLUMNS)
        return self._listing('books', build)

    def users_frame(self):
        def build():
            outstanding = {}
            for loan in self.ledger.outstanding_loans():
                outstanding[loan.user_id] = outstanding.get(loan.user_id, 0) + 1
            rows = [{
                'user_id': u.user_id,
                'username': u.username,
                'role': u.role.value,
                'email': u.email,
                'phone': u.phone,
                'outstanding_loans': outstanding.get(u.user_id, 0),
            } for u in self.members.list()]
            return pd.DataFrame(rows, columns=USER_COLUMNS)
        return self._listing('users', build)

    def _names(self):
        titles = {b.book_id: (b.title, b.author) for b in self.catalog.list()}
        usernames = {u.user_id: u.username for u in self.members.list()}
        return titles, usernames

    def loans_frame(self, status=None):
        """every loan with borrower and title; display_status applies the live overdue check"""
        if isinstance(status, str):
            try:
                status = LoanStatus(status.strip().upper())
            except ValueError:
                logger.error(f"Unknown loan status for loans listing: {status!r}")
                return None

        def build():
            titles, usernames = self._names()
            loans = self.ledger.all_loans()
            if status is not None:
                loans = [l for l in loans if l.status == status]
            rows = [{
                'loan_id': l.loan_id,
                'user_id': l.user_id,
                'username': usernames.get(l.user_id),
                'book_id': l.book_id,
                'title': titles.get(l.book_id, (None, None))[0],
                'author': titles.get(l.book_id, (None, None))[1],
                'issue_date': l.issue_date,
                'due_date': l.due_date,
                'return_date': l.return_date,
                'status': l.status.value,
                'display_status': None,
                'fine_amount': float(l.fine_amount),
            } for l in loans]
            frame = pd.DataFrame(rows, columns=LOAN_COLUMNS)
            overdue = np.array([self.ledger.is_overdue(l) for l in loans], dtype=bool)
            frame['display_status'] = np.where(overdue, LoanStatus.OVERDUE.value, frame['status'])
            return frame
        return self._listing('loans', build)

    def overdue_frame(self):
        def build():
            titles, usernames = self._names()
            rows = [{
                'loan_id': l.loan_id,
                'username': usernames.get(l.user_id),
                'title': titles.get(l.book_id, (None, None))[0],
                'due_date': l.due_date,
                'days_overdue': self.ledger.days_overdue(l),
                'accrued_fine': float(self.ledger.calculate_fine(l)),
            } for l in self.ledger.overdue_loans()]
            frame = pd.DataFrame(rows, columns=OVERDUE_COLUMNS)
            return frame.sort_values('days_overdue', ascending=False).reset_index(drop=True)
        return self._listing('overdue', build)

    def category_frame(self):
        """titles and copies per category"""
        books = self.books_frame()
        if books is None:
            return None
        books = books.assign(category=books['category'].fillna(UNCATEGORIZED))
        grouped = books.groupby('category', sort=True).agg(
            titles=('book_id', 'count'),
            total_copies=('total_copies', 'sum'),
            available_copies=('available_copies', 'sum'),
        )
        return grouped.reset_index()

    def export_csv(self, frame, output_path):
        if frame is None:
            logger.error(f"Nothing to export to {output_path}: listing unavailable")
            return False
        frame.to_csv(output_path, index=False)
        logger.info(f"Listing saved: {output_path} ({len(frame)} records)")
        return True
