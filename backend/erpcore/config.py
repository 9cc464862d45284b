# backend/erpcore/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/erpcore.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///erpcore.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Fiscal approval service (resolution id is sent as the test set id)
    APPROVAL_SERVICE_URL = os.environ.get("APPROVAL_SERVICE_URL", "")
    APPROVAL_TEST_SET_ID = os.environ.get("APPROVAL_TEST_SET_ID", "")
    APPROVAL_API_TOKEN = os.environ.get("APPROVAL_API_TOKEN", "")
    APPROVAL_TIMEOUT_SECONDS = float(os.environ.get("APPROVAL_TIMEOUT_SECONDS", "30"))

    # Submit to the approval service right after the local commit.
    # When False, the outbox worker (flask outbox process) picks it up.
    SUBMIT_ON_COMMIT = _env_bool("SUBMIT_ON_COMMIT", True)
    OUTBOX_CLAIM_TIMEOUT_SECONDS = int(os.environ.get("OUTBOX_CLAIM_TIMEOUT_SECONDS", "300"))

    # A REJECTED document whose failure was a transport error keeps its
    # number reclaimable unless this is switched off.
    RECLAIM_ON_UNREACHABLE = _env_bool("RECLAIM_ON_UNREACHABLE", True)

    # Outbound kardex movements may take stock below zero.
    ALLOW_NEGATIVE_STOCK = _env_bool("ALLOW_NEGATIVE_STOCK", True)

    RETURN_QUANTITY_TOLERANCE = os.environ.get("RETURN_QUANTITY_TOLERANCE", "0.0001")

    # Published price list used for the kardex base price
    BASE_PRICE_LIST = os.environ.get("BASE_PRICE_LIST", "07")

    # Per-family overrides of erpcore.families.DEFAULT_RULES, e.g.
    # {"invoice": {"denylist": [51], "floor": 89000}}
    DOCUMENT_FAMILIES: dict = {}

    # Browser front ends allowed to call the API
    CORS_ALLOWED_ORIGINS = [
        o.strip()
        for o in os.environ.get("CORS_ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
        if o.strip()
    ]
