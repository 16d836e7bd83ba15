"""
Medallion — Achievement Rules Engine for Community Forums
==========================================================
Records what forum members do as an append-only event log, matches each
event against the active achievement catalog, tracks per-user progress,
and completes achievements exactly once with XP / token / reputation
rewards.  A background scheduler drains the log; an admin API curates
the catalog.

Package layout::

    medallion/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Event → action tables, keyword sets, key slugs
    ├── exceptions.py      # Errors raised to admin callers
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # ORM models (events, achievements, progress, audit)
    ├── engine/
    │   ├── history.py     # Immutable event-history snapshots
    │   ├── triggers.py    # Typed trigger configs (one model per trigger kind)
    │   ├── evaluators.py  # Registry of 18 custom heuristic predicates
    │   ├── progress.py    # The five progress algorithms
    │   ├── resolver.py    # Event type → candidate achievements
    │   └── cache.py       # TTL cache of the active achievement set
    ├── services/
    │   ├── event_store.py         # Emitter + event log status transitions
    │   ├── rewards.py             # Reward gateways (logging / HTTP)
    │   ├── completion_service.py  # Idempotent progress/completion upserts
    │   ├── achievement_processor.py # One event → resolver → evaluator → upsert
    │   ├── scheduler.py           # Single-flight background drain loop
    │   ├── admin_service.py       # Audit-logged catalog administration
    │   └── seed.py                # Default catalog seeder
    ├── worker/
    │   └── __main__.py    # ``python -m medallion.worker``
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Engine / config / admin JWT dependencies
        └── routes/        # Admin REST endpoints
"""

__version__ = "0.1.0"
