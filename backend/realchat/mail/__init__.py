"""Verification code delivery (Brevo transactional email or log output)."""
from .service import BrevoMailer, LoggingMailer, VerificationMailer

__all__ = ["BrevoMailer", "LoggingMailer", "VerificationMailer"]
