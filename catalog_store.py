"""
Catalog Store - book records and their copy counts.

available_copies is only ever changed through adjust_availability, which
issues a single conditional UPDATE so the check and the change cannot be
separated by a concurrent caller.
"""

import logging

from sqlalchemy import case, delete, exists, func, or_, select, update

from database_models import Book, Loan, OUTSTANDING_STATUSES
from library_errors import ErrorKind, Result
import validators

logger = logging.getLogger(__name__)

SANITIZED_FIELDS = ('title', 'author', 'category', 'publisher')

EDITABLE_FIELDS = {
    'title', 'author', 'isbn', 'category', 'publisher',
    'publication_year', 'description', 'total_copies',
}


def parse_copy_count(value):
    """returns (count, error kind) for a requested number of copies"""
    try:
        count = int(value)
    except (TypeError, ValueError):
        return None, ErrorKind.INVALID_INPUT
    if count < 0:
        return None, ErrorKind.INVALID_RANGE
    return count, None


class CatalogStore:

    def __init__(self, database, capability_check=None):
        self.database = database
        self.capability_check = capability_check

    def _authorized(self, actor):
        return self.capability_check is None or bool(self.capability_check(actor))

    def _validate_fields(self, fields):
        if 'title' in fields and not validators.is_valid_title(fields['title']):
            return "title must be 1-255 characters"
        if 'author' in fields and not validators.is_valid_author(fields['author']):
            return "author must be 1-255 characters"
        if fields.get('isbn') and not validators.is_valid_isbn(fields['isbn']):
            return f"invalid ISBN: {fields['isbn']}"
        if fields.get('category') and not validators.is_valid_category(fields['category']):
            return "category must be at most 100 characters"
        if fields.get('publication_year') is not None and not validators.is_valid_year(fields['publication_year']):
            return f"invalid publication year: {fields['publication_year']}"
        return None

    def create(self, title, author, total_copies=1, isbn=None, category=None,
               publisher=None, publication_year=None, description=None, actor=None):
        """add a book; all copies start out available"""
        if not self._authorized(actor):
            logger.warning(f"Refused book creation for actor {actor!r}")
            return Result.failure(ErrorKind.NOT_AUTHORIZED, "administrator required")

        fields = {'title': title, 'author': author, 'isbn': isbn, 'category': category,
                  'publication_year': publication_year}
        problem = self._validate_fields(fields)
        if problem:
            return Result.failure(ErrorKind.INVALID_INPUT, problem)
        total_copies, error = parse_copy_count(total_copies)
        if error:
            return Result.failure(error, "total copies must be a non-negative whole number")

        isbn = validators.normalize_isbn(isbn)
        with self.database.session_scope() as session:
            if isbn and session.scalar(select(Book.book_id).where(Book.isbn == isbn)) is not None:
                return Result.failure(ErrorKind.DUPLICATE, f"ISBN {isbn} already in catalog")

            book = Book(
                title=validators.sanitize(title),
                author=validators.sanitize(author),
                isbn=isbn,
                category=validators.sanitize(category) or None,
                publisher=validators.sanitize(publisher) or None,
                publication_year=int(publication_year) if publication_year is not None else None,
                description=description,
                total_copies=total_copies,
                available_copies=total_copies,
            )
            session.add(book)
            session.flush()
            book_id = book.book_id

        logger.info(f"Added book {book_id}: '{title}' ({total_copies} copies)")
        return Result.success(book_id)

    def get(self, book_id):
        with self.database.session_scope() as session:
            return session.get(Book, book_id)

    def list(self, search=None, category=None, available_only=False):
        stmt = select(Book).order_by(Book.title)
        if search:
            term = f"%{search.strip()}%"
            stmt = stmt.where(or_(
                Book.title.ilike(term),
                Book.author.ilike(term),
                Book.category.ilike(term),
            ))
        if category:
            stmt = stmt.where(Book.category == category)
        if available_only:
            stmt = stmt.where(Book.available_copies > 0)

        with self.database.session_scope() as session:
            return list(session.scalars(stmt).all())

    def categories(self):
        stmt = (select(Book.category)
                .where(Book.category.is_not(None), Book.category != '')
                .distinct()
                .order_by(Book.category))
        with self.database.session_scope() as session:
            return list(session.scalars(stmt).all())

    def update(self, book_id, actor=None, **changes):
        """edit descriptive fields; a total_copies change re-derives availability"""
        if not self._authorized(actor):
            logger.warning(f"Refused update of book {book_id} for actor {actor!r}")
            return Result.failure(ErrorKind.NOT_AUTHORIZED, "administrator required")
        if 'available_copies' in changes:
            return Result.failure(ErrorKind.INVALID_INPUT, "available copies are derived from loans")
        unknown = set(changes) - EDITABLE_FIELDS
        if unknown:
            return Result.failure(ErrorKind.INVALID_INPUT, f"unknown fields: {sorted(unknown)}")
        problem = self._validate_fields(changes)
        if problem:
            return Result.failure(ErrorKind.INVALID_INPUT, problem)

        new_total = changes.pop('total_copies', None)
        if 'isbn' in changes:
            changes['isbn'] = validators.normalize_isbn(changes['isbn'])
        for field in SANITIZED_FIELDS:
            if field in changes:
                changes[field] = validators.sanitize(changes[field]) or None

        with self.database.session_scope() as session:
            book = session.get(Book, book_id)
            if book is None:
                return Result.failure(ErrorKind.NOT_FOUND, f"book {book_id} not found")

            isbn = changes.get('isbn')
            if isbn and isbn != book.isbn:
                taken = session.scalar(select(Book.book_id).where(Book.isbn == isbn, Book.book_id != book_id))
                if taken is not None:
                    return Result.failure(ErrorKind.DUPLICATE, f"ISBN {isbn} already in catalog")

            for field, value in changes.items():
                setattr(book, field, value)
            session.flush()

            if new_total is not None:
                result = self._update_total_copies(session, book_id, new_total)
                if not result:
                    session.rollback()
                    return result

        logger.info(f"Updated book {book_id}")
        return Result.success(book_id)

    def update_total_copies(self, book_id, new_total, actor=None):
        """change the number of owned copies, keeping availability consistent with loans"""
        if not self._authorized(actor):
            logger.warning(f"Refused copy count change of book {book_id} for actor {actor!r}")
            return Result.failure(ErrorKind.NOT_AUTHORIZED, "administrator required")

        with self.database.session_scope() as session:
            result = self._update_total_copies(session, book_id, new_total)
            if not result:
                session.rollback()
                return result

        logger.info(f"Book {book_id} now owns {new_total} copies")
        return result

    def _update_total_copies(self, session, book_id, new_total):
        new_total, error = parse_copy_count(new_total)
        if error:
            return Result.failure(error, "total copies must be a non-negative whole number")

        book = session.get(Book, book_id, with_for_update=True)
        if book is None:
            return Result.failure(ErrorKind.NOT_FOUND, f"book {book_id} not found")
        old_total = book.total_copies

        session.execute(
            update(Book)
            .where(Book.book_id == book_id)
            .values(total_copies=new_total)
            .execution_options(synchronize_session=False)
        )
        outstanding = session.scalar(
            select(func.count(Loan.loan_id))
            .where(Loan.book_id == book_id, Loan.status.in_(OUTSTANDING_STATUSES))
        )
        if new_total < outstanding:
            return Result.failure(
                ErrorKind.INVALID_RANGE,
                f"{outstanding} copies are on loan, cannot reduce total to {new_total}",
            )

        self._adjust_availability(session, book_id, new_total - old_total, clamp=True)
        session.expire(book)
        return Result.success(book_id)

    def delete(self, book_id, actor=None):
        """remove a book unless copies of it are still on loan"""
        if not self._authorized(actor):
            logger.warning(f"Refused deletion of book {book_id} for actor {actor!r}")
            return Result.failure(ErrorKind.NOT_AUTHORIZED, "administrator required")

        on_loan = exists().where(Loan.book_id == book_id, Loan.status.in_(OUTSTANDING_STATUSES))
        with self.database.session_scope() as session:
            deleted = session.execute(
                delete(Book)
                .where(Book.book_id == book_id, ~on_loan)
                .execution_options(synchronize_session=False)
            ).rowcount
            if deleted == 0:
                if session.get(Book, book_id) is None:
                    return Result.failure(ErrorKind.NOT_FOUND, f"book {book_id} not found")
                logger.warning(f"Refused deletion of book {book_id}: copies still on loan")
                return Result.failure(ErrorKind.HAS_ACTIVE_LOANS, f"book {book_id} has copies on loan")

        logger.info(f"Deleted book {book_id}")
        return Result.success(book_id)

    def adjust_availability(self, book_id, delta, session=None):
        """Shift available_copies by delta in one conditional statement.

        Decrements that would take the count below zero change nothing and
        return False. Increments are clamped to total_copies. Passing a
        session makes the change part of the caller's transaction.
        """
        if session is not None:
            return self._adjust_availability(session, book_id, delta)
        with self.database.session_scope() as session:
            return self._adjust_availability(session, book_id, delta)

    def _adjust_availability(self, session, book_id, delta, clamp=False):
        shifted = Book.available_copies + delta
        stmt = update(Book).where(Book.book_id == book_id)
        if delta < 0 and not clamp:
            stmt = stmt.where(shifted >= 0).values(available_copies=shifted)
        else:
            stmt = stmt.values(available_copies=case(
                (shifted < 0, 0),
                (shifted > Book.total_copies, Book.total_copies),
                else_=shifted,
            ))
        changed = session.execute(stmt.execution_options(synchronize_session=False)).rowcount
        if changed != 1:
            logger.debug(f"Availability of book {book_id} not changed by {delta:+d}")
            return False
        return True
