"""
tally.config — YAML Configuration Loader
=========================================

Reads ``config.yaml`` for platform tuning (reward amounts, XP curve,
reconciliation batching, leaderboard caching).  Secrets such as
``DATABASE_URL`` stay in the environment (``.env``).

Usage::

    from tally.config import load_config

    cfg = load_config()          # reads ./config.yaml by default
    print(cfg.platform_name)     # "RewardNFT"
    print(cfg.xp_per_level)      # 500
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml

STORE_BACKENDS: frozenset[str] = frozenset({"memory", "sql"})


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TallyConfig:
    """Immutable configuration loaded from ``config.yaml``.

    Every field has a default so services can be built without a file
    (tests, embedded use).
    """

    # Identity
    platform_name: str = "RewardNFT"

    # Storage
    store_backend: str = "memory"  # "memory" or "sql"

    # Progression
    xp_per_level: int = 500

    # Referrals
    referral_reward_amount: float = 4.0  # paid per completed referral (USDC)

    # Quest verification
    share_tag: str = "RewardNFT"      # must appear in a shared post URL
    min_login_payment: float = 0.01   # SOL paid for a daily login check-in

    # Reconciliation batching (external store rate limits)
    reconcile_batch_size: int = 5
    reconcile_batch_delay: float = 0.2   # seconds between batches
    reconcile_item_timeout: float = 30.0
    reconcile_max_retries: int = 2

    # Leaderboards
    leaderboard_cache_ttl: float = 0.0  # seconds; 0 disables caching
    leaderboard_default_limit: int = 50


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> TallyConfig:
    """Read *path* and return a :class:`TallyConfig` instance.

    Keys missing from the file fall back to the dataclass defaults.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    ValueError
        If ``store_backend`` names an unknown backend.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = TallyConfig()
    backend = str(raw.get("store_backend", defaults.store_backend))
    if backend not in STORE_BACKENDS:
        raise ValueError(
            f"Unknown store_backend {backend!r}; expected one of {sorted(STORE_BACKENDS)}"
        )

    return TallyConfig(
        platform_name=raw.get("platform_name", defaults.platform_name),
        store_backend=backend,
        xp_per_level=int(raw.get("xp_per_level", defaults.xp_per_level)),
        referral_reward_amount=float(
            raw.get("referral_reward_amount", defaults.referral_reward_amount)
        ),
        share_tag=raw.get("share_tag", defaults.share_tag),
        min_login_payment=float(raw.get("min_login_payment", defaults.min_login_payment)),
        reconcile_batch_size=int(
            raw.get("reconcile_batch_size", defaults.reconcile_batch_size)
        ),
        reconcile_batch_delay=float(
            raw.get("reconcile_batch_delay", defaults.reconcile_batch_delay)
        ),
        reconcile_item_timeout=float(
            raw.get("reconcile_item_timeout", defaults.reconcile_item_timeout)
        ),
        reconcile_max_retries=int(
            raw.get("reconcile_max_retries", defaults.reconcile_max_retries)
        ),
        leaderboard_cache_ttl=float(
            raw.get("leaderboard_cache_ttl", defaults.leaderboard_cache_ttl)
        ),
        leaderboard_default_limit=int(
            raw.get("leaderboard_default_limit", defaults.leaderboard_default_limit)
        ),
    )
