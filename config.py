"""
Runtime settings.

Values come from the environment.  A ``.env`` file in the working
directory is loaded first so local development does not need exported
variables; variables already set in the environment win.
"""
import os

from dotenv import load_dotenv

load_dotenv()

DB_PATH = os.getenv("COMPLIANCE_DB_PATH", "compliance.db")

# Horizons, in days: "expiring soon" and renewal reminders
EXPIRING_SOON_DAYS = int(os.getenv("COMPLIANCE_EXPIRING_SOON_DAYS", "30"))
RENEWAL_REMINDER_DAYS = int(os.getenv("COMPLIANCE_RENEWAL_REMINDER_DAYS", "60"))

LOG_LEVEL = os.getenv("COMPLIANCE_LOG_LEVEL", "INFO").upper()
