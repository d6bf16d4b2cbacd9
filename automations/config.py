import os
import socket

API_KEY = os.getenv("AUTOMATIONS_API_KEY", "automations-secret-key")

DATABASE_PATH = os.getenv("AUTOMATIONS_DB_PATH", "automations.db")
DATABASE_URL = os.getenv("AUTOMATIONS_DATABASE_URL", f"sqlite:///{DATABASE_PATH}")

API_HOST = os.getenv("AUTOMATIONS_HOST", "127.0.0.1")
API_PORT = int(os.getenv("AUTOMATIONS_PORT", "8000"))

WORKER_ID = os.getenv("AUTOMATIONS_WORKER_ID", f"api-{socket.gethostname()}")

POLL_INTERVAL = float(os.getenv("AUTOMATIONS_POLL_INTERVAL", "5.0"))
EMBEDDED_WORKER = os.getenv("AUTOMATIONS_EMBEDDED_WORKER", "1") == "1"

STEP_BATCH_SIZE = int(os.getenv("AUTOMATIONS_STEP_BATCH_SIZE", "25"))
OUTBOX_BATCH_SIZE = int(os.getenv("AUTOMATIONS_OUTBOX_BATCH_SIZE", "25"))
EVENT_BATCH_SIZE = int(os.getenv("AUTOMATIONS_EVENT_BATCH_SIZE", "25"))
LEASE_SECONDS = int(os.getenv("AUTOMATIONS_LEASE_SECONDS", "300"))
EVENT_MAX_ATTEMPTS = int(os.getenv("AUTOMATIONS_EVENT_MAX_ATTEMPTS", "5"))

EMAIL_WEBHOOK_URL = os.getenv("AUTOMATIONS_EMAIL_WEBHOOK_URL", "")
SMS_WEBHOOK_URL = os.getenv("AUTOMATIONS_SMS_WEBHOOK_URL", "")
ENTITY_SERVICE_URL = os.getenv("AUTOMATIONS_ENTITY_SERVICE_URL", "")
HTTP_TIMEOUT = float(os.getenv("AUTOMATIONS_HTTP_TIMEOUT", "10.0"))

LOG_LEVEL = os.getenv("AUTOMATIONS_LOG_LEVEL", "INFO")
