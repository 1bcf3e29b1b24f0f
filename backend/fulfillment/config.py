# backend/fulfillment/config.py
from __future__ import annotations
import os


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/fulfillment.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///fulfillment.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # What happens when an order would take stock below zero:
    # STRICT rejects the transition, CLAMP floors at 0, ALLOW_NEGATIVE lets it through.
    STOCK_POLICY = os.environ.get("STOCK_POLICY", "STRICT").upper()

    # Share of the zone rate a carrier charges for a failed delivery attempt
    # when the carrier row does not set its own percentage.
    DEFAULT_FAILED_ATTEMPT_FEE_PERCENT = int(os.environ.get("DEFAULT_FAILED_ATTEMPT_FEE_PERCENT", "50"))

    RETRY_ATTEMPTS = int(os.environ.get("RETRY_ATTEMPTS", "3"))
