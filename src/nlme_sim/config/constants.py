"""Global constants for nlme_sim."""

from __future__ import annotations

# Environment and search paths
ENV_PREFIX = "NLME_"
ENV_CONFIG_PATH = "NLME_CONFIG"
LOCAL_CONFIG_NAME = "nlme.toml"
USER_CONFIG_DIR = ".nlme"

# Output artifact names
PREDICTIONS_TABLE = "predictions.csv"
STATUS_TABLE = "status.csv"
PARAMETERS_TABLE = "parameters.csv"
RUN_METADATA = "run_metadata.json"

# Key columns joining predictions to observed data
PREDICTION_KEYS = ("ID", "TIME", "NAME", "REPLICATE")

# Default number of stages in a distributed-delay chain
DEFAULT_NUM_ODE = 21
