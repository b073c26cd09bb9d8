# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
SQL text helpers.

Statements sent through psql cannot use bind parameters, so identifiers
and literals are quoted here the same way PostgreSQL's quote_ident() and
quote_literal() do.
"""

import re
from urllib.parse import urlparse

_SIMPLE_IDENT = re.compile(r"^[a-z_][a-z0-9_$]*$")


def quote_ident(name: str) -> str:
    """Quote an identifier unless it is a plain lowercase name."""
    if "\x00" in name:
        raise ValueError("identifier contains NUL")
    if _SIMPLE_IDENT.match(name):
        return name
    return '"' + name.replace('"', '""') + '"'


def quote_literal(value: str) -> str:
    """Quote a string literal, using E'' syntax when backslashes are present."""
    if "\x00" in value:
        raise ValueError("literal contains NUL")
    escaped = value.replace("'", "''")
    if "\\" in value:
        return "E'" + escaped.replace("\\", "\\\\") + "'"
    return "'" + escaped + "'"


def mask_password(dsn: str) -> str:
    """Mask the password in a URL or keyword connection string for logging."""
    if "://" in dsn:
        parsed = urlparse(dsn)
        if parsed.password:
            return dsn.replace(f":{parsed.password}@", ":***@")
        return dsn
    return re.sub(r"(password=)(\S+)", r"\1***", dsn)
