"""
Tally — Referral & Progression Consistency Engine
==================================================
Records referral events exactly once, keeps the denormalized per-user
counters (referrals, earnings, quests, XP/level) consistent with the
events they are derived from, auto-completes threshold quests, and ranks
users on deterministic leaderboards.

Tally is a library: the host application (web API, bot, scheduled job)
injects a document store and calls the services directly.

Package layout::

    tally/
    ├── __main__.py        # Maintenance CLI (python -m tally)
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Collection names + the leveling formula
    ├── errors.py          # Error taxonomy + Result wrapper
    ├── store/
    │   ├── base.py        # DocumentStore contract, filters, SERVER_TIMESTAMP
    │   ├── memory.py      # Thread-safe in-memory store
    │   └── sql.py         # SQLAlchemy-backed store (documents table)
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   ├── models.py      # documents table
    │   └── seed.py        # Default quest catalogue
    ├── engine/
    │   ├── records.py     # Typed records for every document kind
    │   ├── verification.py # Quest verification payloads + predicates
    │   ├── ranking.py     # Leaderboard sort keys (pure)
    │   └── cache.py       # TTL cache for leaderboard views
    └── services/
        ├── user_service.py           # Aggregates + referral codes
        ├── referral_service.py       # ReferralTracker
        ├── xp_service.py             # XP / level records
        ├── quest_service.py          # QuestProgressEngine
        ├── reconciliation_service.py # ConsistencyReconciler
        └── leaderboard_service.py    # LeaderboardRanker
"""

__version__ = "0.1.0"
