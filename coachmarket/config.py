import os
import warnings
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./coachmarket.db")

# Frontend base URL for redirects and CORS
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", FRONTEND_URL).split(",")
    if origin.strip()
]

# Clerk Configuration
CLERK_JWKS_URL = os.getenv("CLERK_JWKS_URL")
CLERK_ISSUER = os.getenv("CLERK_ISSUER")
CLERK_SECRET_KEY = os.getenv("CLERK_SECRET_KEY")
CLERK_API_URL = os.getenv("CLERK_API_URL", "https://api.clerk.com/v1")

# Cal.com Platform Configuration
CAL_CLIENT_ID = os.getenv("CAL_CLIENT_ID")
CAL_CLIENT_SECRET = os.getenv("CAL_CLIENT_SECRET")
CAL_API_BASE_URL = os.getenv("CAL_API_BASE_URL", "https://api.cal.com/v2")
CAL_API_VERSION = os.getenv("CAL_API_VERSION", "2024-08-13")
CAL_WEBHOOK_SECRET = os.getenv("CAL_WEBHOOK_SECRET")
# Public URL Cal.com should deliver booking webhooks to
CAL_WEBHOOK_URL = os.getenv("CAL_WEBHOOK_URL", "http://localhost:8000/cal/webhooks/receiver")

# Calendly OAuth Configuration
CALENDLY_CLIENT_ID = os.getenv("CALENDLY_CLIENT_ID")
CALENDLY_CLIENT_SECRET = os.getenv("CALENDLY_CLIENT_SECRET")
CALENDLY_REDIRECT_URI = os.getenv("CALENDLY_REDIRECT_URI", f"{FRONTEND_URL}/auth/calendly")
CALENDLY_WEBHOOK_SECRET = os.getenv("CALENDLY_WEBHOOK_SECRET")

# Shared secret sent by the scheduler as "Authorization: Bearer <CRON_SECRET>"
CRON_SECRET = os.getenv("CRON_SECRET")

# Stripe Configuration
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

# Token Encryption Key (generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())")
TOKEN_ENCRYPTION_KEY = os.getenv("TOKEN_ENCRYPTION_KEY")
if not TOKEN_ENCRYPTION_KEY:
    warnings.warn(
        "TOKEN_ENCRYPTION_KEY not set! Integration tokens cannot be stored - DO NOT USE IN PRODUCTION",
        RuntimeWarning,
        stacklevel=2,
    )

if not CRON_SECRET:
    warnings.warn("CRON_SECRET not set! Cron endpoints will reject every call", RuntimeWarning, stacklevel=2)
