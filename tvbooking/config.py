import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./tvbooking.db")

# Frontend base URL for links in emails
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:5173")

# Stripe Configuration
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_API_URL = os.getenv("STRIPE_API_URL", "https://api.stripe.com/v1")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
# Seconds of clock skew accepted on webhook signatures
STRIPE_WEBHOOK_TOLERANCE = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "usd")

# Twilio Configuration
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_FROM_NUMBER = os.getenv("TWILIO_FROM_NUMBER")

# Resend Email Configuration
RESEND_API_KEY = os.getenv("RESEND_API_KEY")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "TV Mount Pros <bookings@tvmountpros.com>")
ADMIN_ALERT_EMAIL = os.getenv("ADMIN_ALERT_EMAIL")

# Maintenance endpoints are disabled unless a token is configured
ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN")

REDIS_URL = os.getenv("REDIS_URL")

# ZCTA reference polygons (GeoJSON FeatureCollection)
ZCTA_DATA_PATH = os.getenv(
    "ZCTA_DATA_PATH", str(Path(__file__).resolve().parent.parent / "data" / "zcta.geojson")
)

# Timeout budget per external call family (seconds)
PAYMENT_INTENT_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_INTENT_TIMEOUT_SECONDS", "30"))
SMS_TIMEOUT_SECONDS = float(os.getenv("SMS_TIMEOUT_SECONDS", "10"))
EMAIL_TIMEOUT_SECONDS = float(os.getenv("EMAIL_TIMEOUT_SECONDS", "10"))
PAYMENT_MAX_ATTEMPTS = int(os.getenv("PAYMENT_MAX_ATTEMPTS", "3"))
NOTIFICATION_MAX_ATTEMPTS = int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", "2"))

# Cleanup sweep thresholds
UNPAID_BOOKING_TTL_MINUTES = int(os.getenv("UNPAID_BOOKING_TTL_MINUTES", "30"))
PAYMENT_PENDING_TTL_MINUTES = int(os.getenv("PAYMENT_PENDING_TTL_MINUTES", "180"))

# Worker matching
NEARBY_RADIUS_MILES = float(os.getenv("NEARBY_RADIUS_MILES", "25"))

# In-process caches
SERVICES_CACHE_TTL_SECONDS = int(os.getenv("SERVICES_CACHE_TTL_SECONDS", "300"))

# Realtime change feed
REALTIME_BATCH_INTERVAL_MS = int(os.getenv("REALTIME_BATCH_INTERVAL_MS", "300"))
REALTIME_MAX_RECONNECT_ATTEMPTS = int(os.getenv("REALTIME_MAX_RECONNECT_ATTEMPTS", "5"))
