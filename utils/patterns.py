"""Pre-compiled regex patterns for the budget control tools.

Patterns are compiled once at import time and shared by the catalog,
mapping and validation code.

Usage:
    from utils.patterns import CURRENCY_CODE, WHITESPACE

    if CURRENCY_CODE.fullmatch(value):
        ...
"""

import re

# ISO-4217 style currency code: exactly three upper-case letters (MXN, USD)
CURRENCY_CODE = re.compile(r'^[A-Z]{3}$')

# Whitespace normalization: multiple spaces/tabs/newlines
WHITESPACE = re.compile(r'\s+')

# Underscores are treated as word separators in catalog names ("MANO_DE_OBRA")
UNDERSCORE = re.compile(r'_+')

# Digit runs, used for natural ordering of catalog codes ("2" < "10")
DIGIT_RUN = re.compile(r'(\d+)')

# Currency symbols for stripping during numeric conversion
CURRENCY_SYMBOLS = re.compile(r'[\$€£¥]')
