import os
from dataclasses import dataclass
from typing import Dict, Optional

from dotenv import dotenv_values

from .logging import get_logger

log = get_logger("config")

EXTRACTION_BACKENDS = ("openai", "openrouter")
ENRICHMENT_BACKENDS = ("grounded", "search-link", "off")
EXTRACTION_POLICIES = ("skip", "abort")

_TRUTHY = {"1", "true", "yes", "on"}


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir.

    Running the CLI from a subdirectory (e.g. `src/`) still finds the
    project-level `.env`.
    """
    d = os.path.abspath(start_dir or ".")
    while True:
        candidate = os.path.join(d, filename)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(d)
        if parent == d:
            return None
        d = parent


def _read_dotenv(dotenv_dir: str) -> Dict[str, str]:
    """Read the nearest .env into a mapping; the process environment is not touched."""
    path = _find_upwards(dotenv_dir, ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(dotenv_dir)}")
        return {}
    try:
        values = {k: (v or "").strip() for k, v in dotenv_values(path).items()}
    except (OSError, UnicodeDecodeError) as e:
        log.warning(f"Failed reading .env: {e}")
        return {}
    log.debug(f"Loaded {len(values)} key(s) from .env at {path}")
    return values


def _lookup(env: Dict[str, str], key: str, default: Optional[str] = None) -> Optional[str]:
    v = os.environ.get(key)
    if v is None:
        v = env.get(key) or env.get(key.lower())
    if v is None or not v.strip():
        return default
    return v.strip()


def _choice(env: Dict[str, str], key: str, choices, default: str) -> str:
    v = (_lookup(env, key) or default).lower()
    if v not in choices:
        log.warning("%s=%r is invalid; expected one of %s. Falling back to %r.", key, v, "/".join(choices), default)
        return default
    return v


def _flag(env: Dict[str, str], key: str) -> bool:
    return (_lookup(env, key) or "").lower() in _TRUTHY


@dataclass
class AppSettings:
    extraction_backend: str = "openai"
    extraction_model: str = "gpt-5-mini"
    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    openrouter_api_key: Optional[str] = None
    openrouter_model: str = "google/gemini-2.5-flash"
    enrichment_backend: str = "search-link"
    enrichment_model: str = "gpt-5-mini"
    extraction_policy: str = "skip"
    cloud_sync: bool = False
    firestore_project: Optional[str] = None
    firestore_collection: str = "customers"
    auto_sync: bool = False
    request_timeout: float = 120.0
    root_dir: Optional[str] = None


def load_settings(dotenv_dir: Optional[str] = None) -> AppSettings:
    """Build settings from the process environment, falling back to .env."""
    dotenv_dir = dotenv_dir or os.getcwd()
    env = _read_dotenv(dotenv_dir)

    timeout_raw = _lookup(env, "REQUEST_TIMEOUT", "120")
    try:
        timeout = float(timeout_raw)
    except ValueError:
        log.warning("REQUEST_TIMEOUT=%r is not a number; using 120s", timeout_raw)
        timeout = 120.0

    settings = AppSettings(
        extraction_backend=_choice(env, "EXTRACTION_BACKEND", EXTRACTION_BACKENDS, "openai"),
        extraction_model=_lookup(env, "EXTRACTION_MODEL", "gpt-5-mini"),
        openai_api_key=_lookup(env, "OPENAI_API_KEY"),
        openai_base_url=_lookup(env, "OPENAI_BASE_URL"),
        openrouter_api_key=_lookup(env, "OPEN_ROUTER_API_KEY"),
        openrouter_model=_lookup(env, "OPENROUTER_MODEL", "google/gemini-2.5-flash"),
        enrichment_backend=_choice(env, "ENRICHMENT_BACKEND", ENRICHMENT_BACKENDS, "search-link"),
        enrichment_model=_lookup(env, "ENRICHMENT_MODEL", "gpt-5-mini"),
        extraction_policy=_choice(env, "EXTRACTION_POLICY", EXTRACTION_POLICIES, "skip"),
        cloud_sync=_flag(env, "CLOUD_SYNC"),
        firestore_project=_lookup(env, "FIRESTORE_PROJECT"),
        firestore_collection=_lookup(env, "FIRESTORE_COLLECTION", "customers"),
        auto_sync=_flag(env, "AUTO_SYNC"),
        request_timeout=timeout,
        root_dir=_lookup(env, "CUSTOMER_DIST_ROOT"),
    )
    log.debug(
        "Settings: extraction=%s/%s enrichment=%s policy=%s cloud_sync=%s",
        settings.extraction_backend,
        settings.extraction_model,
        settings.enrichment_backend,
        settings.extraction_policy,
        settings.cloud_sync,
    )
    return settings
