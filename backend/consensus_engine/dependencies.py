"""
Consensus Engine - FastAPI Dependencies

Process-wide collaborators (config, counter store, bot scorer, gate pipeline)
built once and injected into routers. Tests replace them through
app.dependency_overrides.
"""
from datetime import datetime
from typing import Callable, Optional

from fastapi import Depends, Request

from .config import EngineConfig, get_settings
from .database import utcnow
from .services.abuse import AbuseGatePipeline, build_bot_scoring_client, build_counter_store
from .services.identity import IdentitySignalExtractor


_pipeline: Optional[AbuseGatePipeline] = None


def get_config() -> EngineConfig:
    return get_settings()


def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_pipeline(config: EngineConfig = Depends(get_config)) -> AbuseGatePipeline:
    """Shared pipeline; counter state must outlive a single request."""
    global _pipeline
    if _pipeline is None:
        _pipeline = AbuseGatePipeline(
            config,
            counter_store=build_counter_store(config.redis_url, config.counter_timeout_seconds),
            bot_client=build_bot_scoring_client(config),
        )
    return _pipeline


def get_identity_extractor(config: EngineConfig = Depends(get_config)) -> IdentitySignalExtractor:
    return IdentitySignalExtractor(config.fingerprint_salt, config.trust_proxy_headers)


def peer_address(request: Request) -> Optional[str]:
    return request.client.host if request.client else None
