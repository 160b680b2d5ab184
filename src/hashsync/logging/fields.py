"""Canonical logging field names shared by formatters and call sites."""

TIMESTAMP = "timestamp"
LEVEL = "level"
LOGGER = "logger"
MESSAGE = "message"

# Correlation fields bound by the engine and dispatcher.
PROPAGATION_RUN = "propagation_run"
ENTITY_TYPE = "entity_type"
ENTITY_ID = "entity_id"
DELIVERY_ID = "delivery_id"
SUBSCRIBER = "subscriber"
DRIFT_PASS = "drift_pass"

SERVICE = "service"
