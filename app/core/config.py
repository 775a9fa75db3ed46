import os
from decimal import Decimal

# Database Configuration
# Uses default credentials for local Docker Compose setup
DB_URL = os.getenv("DATABASE_URL", "postgres://user:password@db:5432/fulfillment_db")

# Application Metadata
PROJECT_NAME = "Restaurant Order Fulfillment Service"
VERSION = "1.0.0"
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Outbox Relay Configuration
POLLING_INTERVAL = int(os.getenv("POLLING_INTERVAL", 1)) # Relay checks for new events every N seconds
MAX_ATTEMPTS = int(os.getenv("MAX_ATTEMPTS", 5)) # Max retries for an event
BATCH_SIZE = int(os.getenv("BATCH_SIZE", 50)) # How many events to fetch per poll

# Order lifecycle
DEFAULT_PREPARATION_MINUTES = int(os.getenv("DEFAULT_PREPARATION_MINUTES", 15))

# Notification fan-out
NOTIFICATION_SINK_TIMEOUT = float(os.getenv("NOTIFICATION_SINK_TIMEOUT", 3))
REALTIME_QUEUE_SIZE = int(os.getenv("REALTIME_QUEUE_SIZE", 100))

# Delivery-platform webhook. Disabled when the URL is empty.
PARTNER_WEBHOOK_URL = os.getenv("PARTNER_WEBHOOK_URL", "")
PARTNER_WEBHOOK_API_KEY = os.getenv("PARTNER_WEBHOOK_API_KEY", "")
PARTNER_WEBHOOK_TIMEOUT = float(os.getenv("PARTNER_WEBHOOK_TIMEOUT", 5))
PARTNER_CURRENCY = os.getenv("PARTNER_CURRENCY", "AED")
PARTNER_SOURCE_NAME = os.getenv("PARTNER_SOURCE_NAME", "INSEAT")

# Remote inventory service. Empty means stock is deducted in-process.
DEDUCTION_SERVICE_URL = os.getenv("DEDUCTION_SERVICE_URL", "")
DEDUCTION_SERVICE_TIMEOUT = float(os.getenv("DEDUCTION_SERVICE_TIMEOUT", 5))

MONEY_QUANT = Decimal("0.01")
