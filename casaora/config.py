import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./casaora.db")

# Security - CRITICAL: No default secret key in production
# Principal tokens are issued by the identity service and signed with this key
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only
PRINCIPAL_TOKEN_ALGORITHM = os.getenv("PRINCIPAL_TOKEN_ALGORITHM", "HS256")

# Stripe Configuration (manual-capture payment intents)
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
# Seconds per processor request; a timeout is an unknown outcome, not a failure
PAYMENT_REQUEST_TIMEOUT = float(os.getenv("PAYMENT_REQUEST_TIMEOUT", "10"))
PAYMENT_MAX_RETRIES = int(os.getenv("PAYMENT_MAX_RETRIES", "2"))

# Platform pricing defaults (minor currency units)
DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "COP")
# $299 USD at 4,000 COP/USD
DIRECT_HIRE_FEE = int(os.getenv("DIRECT_HIRE_FEE", "1196000"))
TRIAL_CREDIT_CAP_RATIO = float(os.getenv("TRIAL_CREDIT_CAP_RATIO", "0.5"))
TRIAL_CREDIT_EARN_RATIO = float(os.getenv("TRIAL_CREDIT_EARN_RATIO", "0.5"))
TRIAL_CREDIT_DISPLAY_BOOKINGS = 3

# Pricing rules are cached per country; edits are not retroactive so a few minutes is fine
PRICING_CACHE_TTL = int(os.getenv("PRICING_CACHE_TTL", "300"))

# Recurring plans
PLATFORM_TIMEZONE = os.getenv("PLATFORM_TIMEZONE", "America/Bogota")
PLAN_RESUME_CUTOFF_HOUR = int(os.getenv("PLAN_RESUME_CUTOFF_HOUR", "12"))
# Spawn the next occurrence this many days ahead of its date
PLAN_BOOKING_LEAD_DAYS = int(os.getenv("PLAN_BOOKING_LEAD_DAYS", "7"))

# Notification dispatch (fire-and-forget)
NOTIFICATION_WEBHOOK_URL = os.getenv("NOTIFICATION_WEBHOOK_URL")
NOTIFICATION_TIMEOUT = float(os.getenv("NOTIFICATION_TIMEOUT", "5"))

# Frontend base URL for CORS
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
