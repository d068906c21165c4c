# config.py
import os
from pathlib import Path

BASE_DIR = Path(__file__).parent

# Environment
ENV = os.environ.get("FITZ_ENV", "development")
DEBUG = ENV == "development"

# SQLite by default (fitz.db in the same folder)
DATABASE_URL = os.environ.get("FITZ_DATABASE_URL") or f"sqlite:///{BASE_DIR / 'fitz.db'}"
SQL_ECHO = os.environ.get("FITZ_SQL_ECHO", "0") == "1"

HOST = os.environ.get("FITZ_HOST", "0.0.0.0")
PORT = int(os.environ.get("FITZ_PORT", 3001))
CORS_ORIGINS = [o.strip() for o in os.environ.get("FITZ_CORS_ORIGINS", "*").split(",") if o.strip()]

# Local day boundaries and hour buckets are computed in the hotel's timezone
TIMEZONE = os.environ.get("FITZ_TIMEZONE", "Europe/Dublin")

# Logging
LOG_LEVEL = os.environ.get("FITZ_LOG_LEVEL", "DEBUG" if DEBUG else "INFO")
LOG_FORMAT = os.environ.get("FITZ_LOG_FORMAT", "text" if DEBUG else "json")

# Auth
JWT_SECRET = os.environ.get("FITZ_JWT_SECRET", "dev-secret-change-in-production")
TOKEN_TTL_HOURS = int(os.environ.get("FITZ_TOKEN_TTL_HOURS", 8))
CRON_SECRET = os.environ.get("FITZ_CRON_SECRET")

# Tickets / timeline
AUTOCLOSE_SECONDS = int(os.environ.get("FITZ_AUTOCLOSE_SECONDS", 300))
ARRIVAL_DELAY_THRESHOLD = int(os.environ.get("FITZ_ARRIVAL_DELAY_THRESHOLD", 15))
# Seconds between background auto-close sweeps; 0 disables the sweeper
SWEEP_INTERVAL = int(os.environ.get("FITZ_SWEEP_INTERVAL", 0))

# Messaging
EMAIL_FROM = os.environ.get("FITZ_EMAIL_FROM", "concierge@thefitz.hotel")
SMTP_HOST = os.environ.get("FITZ_SMTP_HOST")
SMTP_PORT = int(os.environ.get("FITZ_SMTP_PORT", 587))
SMTP_USER = os.environ.get("FITZ_SMTP_USER")
SMTP_PASSWORD = os.environ.get("FITZ_SMTP_PASSWORD")
SMTP_USE_TLS = os.environ.get("FITZ_SMTP_USE_TLS", "1") == "1"
TELEGRAM_BOT_TOKEN = os.environ.get("FITZ_TELEGRAM_BOT_TOKEN")

# Transport feeds
FLIGHT_API_KEY = os.environ.get("FITZ_FLIGHT_API_KEY")
GOOGLE_MAPS_API_KEY = os.environ.get("FITZ_GOOGLE_MAPS_API_KEY")
AIRPORT_COORDINATES = os.environ.get("FITZ_AIRPORT_COORDINATES", "53.4264,-6.2499")
HOTEL_COORDINATES = os.environ.get("FITZ_HOTEL_COORDINATES", "53.3498,-6.2603")
HTTP_TIMEOUT = float(os.environ.get("FITZ_HTTP_TIMEOUT", 10))
