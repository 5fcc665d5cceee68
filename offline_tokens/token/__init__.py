"""Token issuance, validation and division."""

from ..models.token import DivisionResult, Token, TokenStatus, ValidationResult
from .divider import TokenDivider
from .issuer import TokenIssuer, split_denominations
from .signer import KeyDirectory, KeyRing, Signer, generate_keypair, verify
from .validator import TokenValidator

__all__ = [
    "DivisionResult",
    "KeyDirectory",
    "KeyRing",
    "Signer",
    "Token",
    "TokenDivider",
    "TokenIssuer",
    "TokenStatus",
    "TokenValidator",
    "ValidationResult",
    "generate_keypair",
    "split_denominations",
    "verify",
]
