"""
Bot-Scoring Collaborator

Contract: verify(token, actor_fingerprint) -> BotVerdict(score, ok).
Any transport failure or timeout raises BotScoringUnavailable; the gate
decides whether that fails open or closed.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from ...errors import BotScoringUnavailable


logger = logging.getLogger(__name__)


@dataclass
class BotVerdict:
    """Humanness verdict: score in 0.0-1.0, ok=False when the token itself is bad."""
    score: float
    ok: bool
    error_codes: List[str] = field(default_factory=list)


class BotScoringClient:
    """Interface for humanness scoring."""

    def verify(self, token: str, actor_fingerprint: str) -> BotVerdict:
        raise NotImplementedError


class RecaptchaBotScoringClient(BotScoringClient):
    """
    reCAPTCHA v3 style siteverify client.

    The fingerprint is sent in place of the remote IP so raw addresses never
    leave the service.
    """

    def __init__(
        self,
        secret: str,
        verify_url: str,
        timeout_seconds: float = 5.0,
        http_client: Optional[httpx.Client] = None,
    ):
        self.secret = secret
        self.verify_url = verify_url
        self.timeout_seconds = timeout_seconds
        self.http_client = http_client or httpx.Client(timeout=timeout_seconds)

    def verify(self, token: str, actor_fingerprint: str) -> BotVerdict:
        try:
            response = self.http_client.post(
                self.verify_url,
                data={
                    "secret": self.secret,
                    "response": token,
                    "remoteip": actor_fingerprint,
                },
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise BotScoringUnavailable(f"{type(e).__name__}: {e}") from e

        ok = bool(payload.get("success"))
        # A successful verification without a score is treated as fully human
        score = payload.get("score")
        return BotVerdict(
            score=float(score) if score is not None else (1.0 if ok else 0.0),
            ok=ok,
            error_codes=list(payload.get("error-codes", [])),
        )

    def close(self) -> None:
        self.http_client.close()


def build_bot_scoring_client(config) -> Optional[BotScoringClient]:
    """Client when scoring is enabled and a secret is configured, else None (scoring skipped)."""
    if not config.bot_scoring_enabled:
        logger.info("Bot scoring disabled by configuration")
        return None
    if not config.bot_scoring_secret:
        logger.warning("Bot scoring not configured - BOT_SCORING_SECRET missing. Skipping verification.")
        return None
    logger.info(f"Bot scoring fail mode: {config.bot_fail_mode}")
    return RecaptchaBotScoringClient(
        secret=config.bot_scoring_secret,
        verify_url=config.bot_scoring_url,
        timeout_seconds=config.bot_timeout_seconds,
    )
