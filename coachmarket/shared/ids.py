"""ULID helpers - every primary key in the marketplace is a 26 character ULID"""

from ulid import ULID


def generate_ulid() -> str:
    """Generate a new lexicographically sortable identifier"""
    return str(ULID())
