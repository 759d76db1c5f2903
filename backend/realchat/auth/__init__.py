"""Authentication: dual-token lifecycle, OTP registration and session cookies."""
from .schemas import AuthResult, Identity, TokenPair
from .security import SecretHasher
from .service import AuthService
from .tokens import TokenIssuer

__all__ = ["AuthResult", "AuthService", "Identity", "SecretHasher", "TokenIssuer", "TokenPair"]
