import enum
import logging
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum,
    Integer,
    Numeric,
    String,
    Text,
    create_engine,
)
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from library_errors import SchemaInitializationError, StoreUnavailableError

logger = logging.getLogger(__name__)

Base = declarative_base()


class UserRole(enum.Enum):
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class LoanStatus(enum.Enum):
    ISSUED = "ISSUED"
    RETURNED = "RETURNED"
    OVERDUE = "OVERDUE"


# statuses that hold a physical copy out of the library
OUTSTANDING_STATUSES = (LoanStatus.ISSUED, LoanStatus.OVERDUE)


class Book(Base):
    """book table - catalog entry with its copy counts"""
    __tablename__ = 'books'

    book_id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    author = Column(String(255), nullable=False)
    isbn = Column(String(20), nullable=True, unique=True)
    category = Column(String(100), nullable=True)
    publisher = Column(String(255), nullable=True)
    publication_year = Column(Integer, nullable=True)
    description = Column(Text, nullable=True)

    total_copies = Column(Integer, nullable=False, default=0)
    available_copies = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    # loans hold weak references, so the join is declared rather than enforced
    loans = relationship(
        'Loan',
        primaryjoin='Book.book_id == foreign(Loan.book_id)',
        viewonly=True,
    )

    @property
    def is_available(self):
        return self.available_copies > 0

    def __repr__(self):
        return (f"<Book(id={self.book_id}, title='{self.title}', "
                f"available={self.available_copies}/{self.total_copies})>")


class User(Base):
    """user table - library members and administrators"""
    __tablename__ = 'users'

    user_id = Column(Integer, primary_key=True, autoincrement=True)
    username = Column(String(50), nullable=False, unique=True)
    credential = Column(String(255), nullable=False)
    role = Column(Enum(UserRole), nullable=False, default=UserRole.MEMBER)
    email = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    loans = relationship(
        'Loan',
        primaryjoin='User.user_id == foreign(Loan.user_id)',
        viewonly=True,
    )

    @property
    def is_admin(self):
        return self.role == UserRole.ADMIN

    def __repr__(self):
        return f"<User(id={self.user_id}, username='{self.username}', role={self.role.value})>"


class Loan(Base):
    """loan table - issue and return transactions, kept as an audit trail"""
    __tablename__ = 'loans'

    loan_id = Column(Integer, primary_key=True, autoincrement=True)
    book_id = Column(Integer, nullable=False, index=True)
    user_id = Column(Integer, nullable=False, index=True)

    issue_date = Column(Date, nullable=False)
    due_date = Column(Date, nullable=False)
    return_date = Column(Date, nullable=True)
    status = Column(Enum(LoanStatus), nullable=False, default=LoanStatus.ISSUED, index=True)
    fine_amount = Column(Numeric(10, 2), nullable=False, default=0)

    created_at = Column(DateTime, default=datetime.now)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    book = relationship(
        'Book',
        primaryjoin='foreign(Loan.book_id) == Book.book_id',
        viewonly=True,
    )
    user = relationship(
        'User',
        primaryjoin='foreign(Loan.user_id) == User.user_id',
        viewonly=True,
    )

    @property
    def is_outstanding(self):
        return self.status in OUTSTANDING_STATUSES

    def __repr__(self):
        return (f"<Loan(id={self.loan_id}, book_id={self.book_id}, user_id={self.user_id}, "
                f"due={self.due_date}, status={self.status.value})>")


class LibraryDatabase:
    """Owns the engine and session factory shared by the stores.

    Each store receives the same instance at construction time; every
    operation acquires its own session through ``session_scope`` so nothing
    is held between calls.
    """

    def __init__(self, db_url='sqlite:///library_system.db', echo=False):
        self.db_url = db_url
        connect_args = {}
        if db_url.startswith('sqlite'):
            # wait for competing writers instead of failing straight away
            connect_args = {'timeout': 30, 'check_same_thread': False}
        self.engine = create_engine(db_url, echo=echo, connect_args=connect_args)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def initialize_schema(self):
        """Create all tables, aborting on the first failure."""
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            logger.error(f"Schema initialization failed for {self.db_url}: {e}", exc_info=True)
            raise SchemaInitializationError(str(e)) from e
        logger.info(f"Schema ready: {', '.join(Base.metadata.tables.keys())}")

    def reset_schema(self):
        """Drop every table and create them again."""
        try:
            Base.metadata.drop_all(self.engine)
        except SQLAlchemyError as e:
            logger.error(f"Schema reset failed for {self.db_url}: {e}", exc_info=True)
            raise SchemaInitializationError(str(e)) from e
        logger.warning(f"Dropped all tables in {self.db_url}")
        self.initialize_schema()

    @contextmanager
    def session_scope(self):
        """Provide a transactional scope around a series of operations."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except (OperationalError, InterfaceError) as e:
            session.rollback()
            logger.error(f"Database error: {e}", exc_info=True)
            raise StoreUnavailableError(str(e)) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self):
        self.engine.dispose()


def create_database(db_url='sqlite:///library_system.db'):
    database = LibraryDatabase(db_url)
    database.initialize_schema()
    return database


if __name__ == "__main__":
    database = create_database()
    print(f"Database created successfully: {database.db_url}")
    print("\nTables created:")
    for table in Base.metadata.tables.keys():
        print(f"  - {table}")
