"""
Clerk - Configuration
=====================
Frozen settings objects built from environment variables.
Read at call time so load_dotenv() in main.py has a chance to run first.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

_DEFAULT_MODELS = "llama-3.3-70b-versatile,llama-3.1-8b-instant,mixtral-8x7b-32768"


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class RetrievalConfig:
    """Hybrid search knobs."""
    k1: float = 1.5
    b: float = 0.75
    min_token_length: int = 3
    rrf_k: int = 60
    similarity_threshold: float = 0.3
    embedding_timeout: float = 5.0
    default_max_results: int = 10


@dataclass(frozen=True)
class NegotiationConfig:
    """Bargaining thresholds. Every number the state machine uses lives here."""
    turn_threshold: int = 3
    max_discount_cap: int = 30
    max_offer_percent: int = 15
    min_discount: int = 5
    commitment_bonus_max: int = 5
    turn_penalty: int = 2
    cooldown_seconds: float = 300.0
    rudeness_threshold: int = 3
    surcharge_per_point: int = 5
    surcharge_cap: int = 25
    commitment_baseline: int = 50
    positive_signal_weight: int = 15
    positive_signal_cap: int = 45
    negative_signal_weight: int = 20
    log_window: int = 20


@dataclass(frozen=True)
class BridgeConfig:
    """External chat model access."""
    api_key: str = ""
    base_url: str = "https://api.groq.com/openai/v1"
    models: tuple[str, ...] = tuple(_DEFAULT_MODELS.split(","))
    min_request_interval: float = 1.0
    max_retries: int = 2
    retry_base_delay: float = 3.0
    request_timeout: float = 30.0
    temperature: float = 0.7
    max_tokens: int = 1024
    history_turns: int = 6


@dataclass(frozen=True)
class Settings:
    """Configuration container for the whole service."""
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    negotiation: NegotiationConfig = field(default_factory=NegotiationConfig)
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    catalog_path: Path = BASE_DIR / "data" / "catalog.json"
    log_level: str = "INFO"


def load_settings() -> Settings:
    """
    Build Settings from environment variables, falling back to defaults.

    Invalid numeric values raise ValueError at startup rather than
    silently running with surprising thresholds.
    """
    models = tuple(
        m.strip() for m in os.getenv("LLM_MODELS", _DEFAULT_MODELS).split(",") if m.strip()
    )
    retrieval = RetrievalConfig(
        similarity_threshold=_env_float("SIMILARITY_THRESHOLD", 0.3),
        embedding_timeout=_env_float("EMBEDDING_TIMEOUT", 5.0),
        default_max_results=_env_int("DEFAULT_MAX_RESULTS", 10),
    )
    negotiation = NegotiationConfig(
        turn_threshold=_env_int("NEGOTIATION_TURN_THRESHOLD", 3),
        max_discount_cap=_env_int("NEGOTIATION_MAX_DISCOUNT", 30),
        max_offer_percent=_env_int("NEGOTIATION_MAX_OFFER", 15),
        min_discount=_env_int("NEGOTIATION_MIN_DISCOUNT", 5),
        cooldown_seconds=_env_float("NEGOTIATION_COOLDOWN_SECONDS", 300.0),
        rudeness_threshold=_env_int("RUDENESS_THRESHOLD", 3),
        surcharge_cap=_env_int("RUDENESS_SURCHARGE_CAP", 25),
    )
    bridge = BridgeConfig(
        api_key=os.getenv("LLM_API_KEY", os.getenv("GROQ_API_KEY", "")),
        base_url=os.getenv("LLM_BASE_URL", "https://api.groq.com/openai/v1"),
        models=models,
        min_request_interval=_env_float("LLM_MIN_INTERVAL", 1.0),
        max_retries=_env_int("LLM_MAX_RETRIES", 2),
        retry_base_delay=_env_float("LLM_RETRY_BASE_DELAY", 3.0),
        request_timeout=_env_float("LLM_TIMEOUT", 30.0),
    )
    catalog_path = os.getenv("CATALOG_PATH")
    return Settings(
        retrieval=retrieval,
        negotiation=negotiation,
        bridge=bridge,
        catalog_path=Path(catalog_path) if catalog_path else BASE_DIR / "data" / "catalog.json",
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    )
