DEFAULT_MAX_CONCURRENCY = 4
DEFAULT_CANCEL_GRACE_PERIOD = 30.0
DEFAULT_CONFIG_PATH = "gantry.yaml"
OUTPUT_FILE_ENV = "GANTRY_OUTPUT"
MASK = "***"
