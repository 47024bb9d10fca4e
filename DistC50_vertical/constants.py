"""
constants.py

Centralized constants for DistC50_vertical. Covers tree-growing limits,
secure-sum masking, networking and dataset discretisation.
"""

from typing import Dict, Any

DEFAULTS: Dict[str, Any] = {
    # RNG / seed handling (train/test shuffling only; masks use os.urandom)
    "DEFAULT_SEED": 0,

    # Tree growing
    "MAX_TREE_DEPTH": 10,
    "MIN_INSTANCES_PER_LEAF": 5,
    "MIN_GAIN_THRESHOLD": 0.01,
    # split information below this is treated as zero (gain ratio -> 0.0)
    "SPLIT_INFO_EPS": 1e-10,

    # Secure sum masking; MIN_MASK_BITS is the narrowest width accepted.
    "MASK_BITS": 64,
    "MIN_MASK_BITS": 32,

    # Networking / defaults
    "DEFAULT_HOST": "127.0.0.1",
    "DEFAULT_COORDINATOR_PORT": 9000,
    "DEFAULT_DATA_PARTY_BASE_PORT": 9001,
    "COORDINATOR_ID": "coordinator",
    "SOCKET_TIMEOUT": 30.0,
    "MAX_CONNECTION_RETRIES": 3,
    "CONNECTION_RETRY_DELAY": 1.0,
    "REGISTRATION_TIMEOUT": 60.0,
    "MAX_FRAME_BYTES": 16 * 1024 * 1024,

    # Dataset handling
    "NUMERIC_BINS": 10,
    "MISSING_VALUE": -1,
    "TRAIN_PERCENT": 66.0,
}

# convenience accessors
SPLIT_INFO_EPS = DEFAULTS["SPLIT_INFO_EPS"]
MISSING_VALUE = DEFAULTS["MISSING_VALUE"]
COORDINATOR_ID = DEFAULTS["COORDINATOR_ID"]


def update_from_dict(d):
    DEFAULTS.update(d)
    # update convenience names
    globals()["SPLIT_INFO_EPS"] = DEFAULTS["SPLIT_INFO_EPS"]
    globals()["MISSING_VALUE"] = DEFAULTS["MISSING_VALUE"]
    globals()["COORDINATOR_ID"] = DEFAULTS["COORDINATOR_ID"]
