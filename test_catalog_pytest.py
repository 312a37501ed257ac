"""
Pytest tests for catalog_store.py
"""

import pytest

from catalog_store import CatalogStore
from library_errors import ErrorKind
from membership_store import is_admin_actor


def test_create_and_get(catalog):
    """Test that a new book starts with every copy available"""
    result = catalog.create('Sapiens', 'Yuval Noah Harari', total_copies=4,
                            isbn='978-0-09-959008-8', category='History', publication_year=2014)
    assert result

    book = catalog.get(result.value)
    assert book.title == 'Sapiens'
    assert book.isbn == '9780099590088'
    assert book.total_copies == 4
    assert book.available_copies == 4


def test_get_missing_returns_none(catalog):
    """Test that looking up an unknown id returns None instead of failing"""
    assert catalog.get(42) is None


def test_create_rejects_bad_input(catalog):
    """Test validation of counts, title and ISBN"""
    assert catalog.create('Title', 'Author', total_copies=-1).error == ErrorKind.INVALID_RANGE
    assert catalog.create('', 'Author').error == ErrorKind.INVALID_INPUT
    assert catalog.create('Title', 'Author', isbn='12345').error == ErrorKind.INVALID_INPUT
    assert catalog.list() == []


def test_create_rejects_duplicate_isbn(catalog, single_copy_book):
    """Test that an ISBN can only be catalogued once"""
    result = catalog.create('Ulysses (reprint)', 'James Joyce', isbn='9780199535675')
    assert result.error == ErrorKind.DUPLICATE
    assert len(catalog.list()) == 1


def test_list_search_and_filters(catalog):
    """Test listing by search term, category and availability"""
    catalog.create('Dune', 'Frank Herbert', total_copies=2, category='Science Fiction')
    catalog.create('Emma', 'Jane Austen', total_copies=0, category='Classics')
    catalog.create('Persuasion', 'Jane Austen', total_copies=1, category='Classics')

    assert [b.title for b in catalog.list()] == ['Dune', 'Emma', 'Persuasion']
    assert [b.title for b in catalog.list(search='austen')] == ['Emma', 'Persuasion']
    assert [b.title for b in catalog.list(search='fiction')] == ['Dune']
    assert [b.title for b in catalog.list(category='Classics', available_only=True)] == ['Persuasion']
    assert catalog.categories() == ['Classics', 'Science Fiction']


def test_update_descriptive_fields(catalog, single_copy_book):
    """Test that title and publisher edits persist"""
    assert catalog.update(single_copy_book, title='Ulysses: Annotated', publisher='OUP')
    book = catalog.get(single_copy_book)
    assert book.title == 'Ulysses: Annotated'
    assert book.publisher == 'OUP'


def test_update_cannot_set_available_copies(catalog, single_copy_book):
    """Test that availability can never be written directly"""
    result = catalog.update(single_copy_book, available_copies=10)
    assert result.error == ErrorKind.INVALID_INPUT
    assert catalog.get(single_copy_book).available_copies == 1


def test_update_unknown_book(catalog):
    assert catalog.update(404, title='Nothing').error == ErrorKind.NOT_FOUND


def test_update_total_copies_grows_and_shrinks(catalog, ledger, alice):
    """Test the difference rule when the collection grows or shrinks"""
    book_id = catalog.create('Dune', 'Frank Herbert', total_copies=3).value
    ledger.issue_loan(alice, book_id)

    assert catalog.update_total_copies(book_id, 5)
    book = catalog.get(book_id)
    assert (book.total_copies, book.available_copies) == (5, 4)

    assert catalog.update(book_id, total_copies=2)
    book = catalog.get(book_id)
    assert (book.total_copies, book.available_copies) == (2, 1)
    assert ledger.verify_invariant() == {}


def test_update_total_copies_below_loans_rejected(catalog, ledger, alice, bob):
    """Test that the total cannot drop below the copies currently on loan"""
    book_id = catalog.create('Dune', 'Frank Herbert', total_copies=2).value
    ledger.issue_loan(alice, book_id)
    ledger.issue_loan(bob, book_id)

    result = catalog.update_total_copies(book_id, 1)
    assert result.error == ErrorKind.INVALID_RANGE
    book = catalog.get(book_id)
    assert (book.total_copies, book.available_copies) == (2, 0)


def test_update_total_copies_negative(catalog, single_copy_book):
    assert catalog.update_total_copies(single_copy_book, -2).error == ErrorKind.INVALID_RANGE


def test_adjust_availability_rejects_negative(catalog):
    """Test that a decrement past zero fails and changes nothing"""
    book_id = catalog.create('Emma', 'Jane Austen', total_copies=1).value

    assert catalog.adjust_availability(book_id, -1) is True
    assert catalog.adjust_availability(book_id, -1) is False
    assert catalog.get(book_id).available_copies == 0


def test_adjust_availability_clamps_to_total(catalog):
    """Test that increments never push availability above the total"""
    book_id = catalog.create('Emma', 'Jane Austen', total_copies=2).value

    assert catalog.adjust_availability(book_id, 3) is True
    assert catalog.get(book_id).available_copies == 2


def test_adjust_availability_unknown_book(catalog):
    assert catalog.adjust_availability(77, 1) is False


def test_delete_book(catalog, single_copy_book):
    """Test deleting a book without loans, then deleting it again"""
    assert catalog.delete(single_copy_book)
    assert catalog.get(single_copy_book) is None
    assert catalog.delete(single_copy_book).error == ErrorKind.NOT_FOUND


def test_delete_book_with_outstanding_loans(catalog, ledger, alice, single_copy_book):
    """Test that a book with copies on loan cannot be deleted until they come back"""
    loan_id = ledger.issue_loan(alice, single_copy_book).value

    assert catalog.delete(single_copy_book).error == ErrorKind.HAS_ACTIVE_LOANS
    assert catalog.get(single_copy_book) is not None

    ledger.return_loan(loan_id)
    assert catalog.delete(single_copy_book)


def test_capability_check_guards_mutations(database, admin, members):
    """Test that a refusing capability check blocks administrative changes"""
    guarded = CatalogStore(database, capability_check=is_admin_actor)
    member = members.get_by_id(members.create('reader', 'pw').value)

    assert guarded.create('Dune', 'Frank Herbert', actor=member).error == ErrorKind.NOT_AUTHORIZED
    assert guarded.create('Dune', 'Frank Herbert', actor=None).error == ErrorKind.NOT_AUTHORIZED

    book_id = guarded.create('Dune', 'Frank Herbert', actor=admin).value
    assert guarded.update(book_id, title='Dune Messiah', actor=member).error == ErrorKind.NOT_AUTHORIZED
    assert guarded.delete(book_id, actor=member).error == ErrorKind.NOT_AUTHORIZED
    assert guarded.delete(book_id, actor=admin)


@pytest.mark.parametrize('year', [999, 3000, 'abc'])
def test_create_rejects_bad_year(catalog, year):
    assert catalog.create('Title', 'Author', publication_year=year).error == ErrorKind.INVALID_INPUT


@pytest.mark.parametrize('copies', ['abc', None, 'two'])
def test_create_rejects_non_numeric_copies(catalog, copies):
    """Test that a copy count that is not a number is refused rather than raised"""
    assert catalog.create('Title', 'Author', total_copies=copies).error == ErrorKind.INVALID_INPUT
    assert catalog.list() == []


def test_update_total_copies_non_numeric(catalog, single_copy_book):
    """Test that a non-numeric total is refused and the whole update is undone"""
    assert catalog.update_total_copies(single_copy_book, 'abc').error == ErrorKind.INVALID_INPUT

    result = catalog.update(single_copy_book, title='Ulysses Revised', total_copies='abc')
    assert result.error == ErrorKind.INVALID_INPUT
    book = catalog.get(single_copy_book)
    assert (book.title, book.total_copies, book.available_copies) == ('Ulysses', 1, 1)


def test_update_sanitizes_text_fields(catalog, single_copy_book):
    """Test that edited text fields are cleaned the same way as on create"""
    assert catalog.update(single_copy_book, title='  Ulysses   Annotated ',
                          publisher='  OUP ', category=' Modern  Fiction')
    book = catalog.get(single_copy_book)
    assert book.title == 'Ulysses Annotated'
    assert book.publisher == 'OUP'
    assert book.category == 'Modern Fiction'
