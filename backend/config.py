import os

# --- Database ---
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./library.db")

# --- Circulation rules ---
FINE_PER_DAY = float(os.getenv("FINE_PER_DAY", "500"))  # Kz per overdue day
FINE_BLOCK_THRESHOLD = float(os.getenv("FINE_BLOCK_THRESHOLD", "2000"))  # >= blocks new loans
MAX_RENEWALS = int(os.getenv("MAX_RENEWALS", "2"))
MAX_RESERVATIONS_PER_USER = int(os.getenv("MAX_RESERVATIONS_PER_USER", "3"))
RESERVATION_PICKUP_HOURS = int(os.getenv("RESERVATION_PICKUP_HOURS", "48"))

# --- Scheduler ---
SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() in ("1", "true", "yes")
RESERVATION_SWEEP_MINUTES = int(os.getenv("RESERVATION_SWEEP_MINUTES", "15"))

# --- HTTP ---
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# --- Bootstrap admin (created on startup if missing) ---
DEFAULT_ADMIN_USERNAME = os.getenv("DEFAULT_ADMIN_USERNAME", "admin")
DEFAULT_ADMIN_EMAIL = os.getenv("DEFAULT_ADMIN_EMAIL", "admin@library.local")
DEFAULT_ADMIN_PASSWORD = os.getenv("DEFAULT_ADMIN_PASSWORD", "admin123")
