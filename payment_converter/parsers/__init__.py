"""Source-format parsers (SWIFT MT103, NACHA ACH)."""
from .mt103 import parse_mt103  # noqa: F401
from .nacha import parse_cents, parse_nacha  # noqa: F401
