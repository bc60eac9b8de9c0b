"""Convert SWIFT MT103 and NACHA ACH payments to ISO 20022 pain.001.001.03."""
from .errors import (  # noqa: F401
    ContentError,
    ControlTotalsMismatch,
    ConversionError,
    ParseError,
    SecurityViolation,
    UnsupportedFormatError,
    UsageError,
)
from .models import CreditTransfer, ParseResult, PaymentBatch  # noqa: F401
from .service import ConversionResult, ConversionService  # noqa: F401

__version__ = "1.0.0"
