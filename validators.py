"""
Input validation rules for catalog and membership records.
"""

import re
from datetime import date

EMAIL_PATTERN = re.compile(r'^[A-Za-z0-9+_.-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$')
PHONE_PATTERN = re.compile(r'^\+?\d{10,15}$')
ISBN_PATTERN = re.compile(r'^(\d{9}[\dXx]|\d{13})$')
USERNAME_PATTERN = re.compile(r'^[A-Za-z0-9_]{3,20}$')


def sanitize(value):
    if value is None:
        return ""
    return re.sub(r'\s+', ' ', str(value).strip())


def is_not_empty(value):
    return value is not None and str(value).strip() != ""


def is_valid_email(email):
    if not is_not_empty(email):
        return False
    return bool(EMAIL_PATTERN.match(email.strip()))


def is_valid_phone(phone):
    if not is_not_empty(phone):
        return False
    # separators are allowed in the input but not counted
    digits = re.sub(r'[\s\-()]', '', phone)
    return bool(PHONE_PATTERN.match(digits))


def is_valid_isbn(isbn):
    """ISBN is optional; when given it must be ISBN-10 or ISBN-13 without hyphens."""
    if isbn is None:
        return True
    if not isinstance(isbn, str):
        return False
    if not isbn.strip():
        return True
    return bool(ISBN_PATTERN.match(isbn.strip().replace('-', '')))


def normalize_isbn(isbn):
    if not isinstance(isbn, str) or not isbn.strip():
        return None
    return isbn.strip().replace('-', '').upper()


def is_valid_username(username):
    if not is_not_empty(username):
        return False
    return bool(USERNAME_PATTERN.match(username.strip()))


def is_valid_title(title):
    return is_not_empty(title) and len(title.strip()) <= 255


def is_valid_author(author):
    return is_not_empty(author) and len(author.strip()) <= 255


def is_valid_category(category):
    return is_not_empty(category) and len(category.strip()) <= 100


def is_valid_year(year, today=None):
    today = today or date.today()
    try:
        year = int(year)
    except (TypeError, ValueError):
        return False
    return 1000 <= year <= today.year + 1


def is_positive_integer(value):
    try:
        return int(value) > 0
    except (TypeError, ValueError):
        return False


def is_valid_date_range(issue_date, due_date):
    """due date must fall strictly after the issue date"""
    if issue_date is None or due_date is None:
        return False
    return issue_date < due_date
