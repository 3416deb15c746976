import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./surveyportal.db")
SECRET_KEY = os.getenv("SECRET_KEY", "devsecret")
SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "auth-token")
SESSION_MAX_AGE_SECONDS = int(os.getenv("SESSION_MAX_AGE_SECONDS", str(24 * 60 * 60)))
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").strip().lower() in ("1", "true", "yes", "on")
BASE_URL = os.getenv("BASE_URL", "http://localhost:3000").rstrip("/")
HOA_NAME = os.getenv("HOA_NAME", "HOA")
DISPLAY_TIMEZONE = os.getenv("DISPLAY_TIMEZONE", "America/New_York")
INVITE_EXPIRY_DAYS = int(os.getenv("INVITE_EXPIRY_DAYS", "7"))
RESET_TOKEN_EXPIRY_HOURS = int(os.getenv("RESET_TOKEN_EXPIRY_HOURS", "24"))
FORGOT_PASSWORD_EXPIRY_HOURS = int(os.getenv("FORGOT_PASSWORD_EXPIRY_HOURS", "1"))
VERIFICATION_EXPIRY_HOURS = int(os.getenv("VERIFICATION_EXPIRY_HOURS", "24"))
EMAIL_MAX_WORKERS = int(os.getenv("EMAIL_MAX_WORKERS", "8"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
# urlsafe base64 Fernet key; derived from SECRET_KEY when unset
DATA_ENCRYPTION_KEY = os.getenv("DATA_ENCRYPTION_KEY", "")
