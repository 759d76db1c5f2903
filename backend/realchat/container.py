"""Service wiring.

``build_services`` assembles every long-lived component from an
``AppConfig``. The resulting ``Services`` instance is owned by the FastAPI
application (``app.state.services``); nothing here is a module-level
singleton, so tests can build as many isolated instances as they need.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from fastapi import HTTPException
from starlette.requests import HTTPConnection

from realchat.auth.security import SecretHasher
from realchat.auth.service import AuthService
from realchat.auth.tokens import TokenIssuer
from realchat.chat.gatekeeper import ConnectionGatekeeper
from realchat.chat.history import HistoryReplay
from realchat.chat.pipeline import MessagePipeline
from realchat.chat.presence import MessageClock, PresenceTracker
from realchat.config import AppConfig
from realchat.mail import BrevoMailer, LoggingMailer, VerificationMailer
from realchat.storage.duckdb_store import DuckDBChatStore
from realchat.storage.repository import ChatStore

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: AppConfig
    store: ChatStore
    auth: AuthService
    presence: PresenceTracker
    history: HistoryReplay
    pipeline: MessagePipeline
    gatekeeper: ConnectionGatekeeper
    mailer: VerificationMailer

    def close(self) -> None:
        """Release the mailer HTTP client and the database connection."""
        close_mailer = getattr(self.mailer, "close", None)
        if close_mailer is not None:
            close_mailer()
        self.store.close()


def build_mailer(config: AppConfig) -> VerificationMailer:
    mail = config.mail
    api_key = config.secrets.mail.api_key
    if mail.provider == "brevo" and api_key:
        return BrevoMailer(
            api_key=api_key,
            sender_email=mail.sender_email,
            sender_name=mail.sender_name,
            api_url=mail.api_url,
            timeout=mail.timeout_seconds,
            code_ttl_seconds=config.auth.otp_ttl_seconds,
        )
    if mail.provider == "brevo":
        logger.warning("No Brevo API key configured; verification codes will only be logged")
    return LoggingMailer()


def build_services(
    config: AppConfig,
    store: Optional[ChatStore] = None,
    mailer: Optional[VerificationMailer] = None,
    hasher: Optional[SecretHasher] = None,
) -> Services:
    """Create the full component graph; collaborators can be overridden."""
    store = store or DuckDBChatStore.get_instance(config.storage.db_path)
    mailer = mailer or build_mailer(config)
    jwt_secrets = config.secrets.jwt
    tokens = TokenIssuer(
        access_secret=jwt_secrets.access_secret,
        refresh_secret=jwt_secrets.refresh_secret,
        algorithm=jwt_secrets.algorithm,
        access_ttl=timedelta(minutes=config.auth.access_token_minutes),
        refresh_ttl=timedelta(days=config.auth.refresh_token_days),
    )
    auth = AuthService(
        store=store,
        tokens=tokens,
        hasher=hasher or SecretHasher(),
        mailer=mailer,
        otp_ttl_seconds=config.auth.otp_ttl_seconds,
    )
    presence = PresenceTracker(MessageClock(store.last_message_at()))
    history = HistoryReplay(
        store,
        default_limit=config.chat.history_limit,
        max_limit=config.chat.max_history_limit,
    )
    pipeline = MessagePipeline(presence, store, history, default_room=config.chat.default_room)
    gatekeeper = ConnectionGatekeeper(
        auth, handshake_timeout=config.auth.handshake_timeout_seconds
    )
    return Services(
        config=config,
        store=store,
        auth=auth,
        presence=presence,
        history=history,
        pipeline=pipeline,
        gatekeeper=gatekeeper,
        mailer=mailer,
    )


def get_services(connection: HTTPConnection) -> Services:
    """FastAPI dependency for both HTTP requests and WebSockets."""
    services = getattr(connection.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services are not initialised")
    return services
