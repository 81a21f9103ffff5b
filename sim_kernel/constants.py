"""
Sim Kernel — Constants

All magic strings and numbers of the metadata / tagging core live here.
"""

# --- Storage layout ---
METADATA_FILENAME: str = "metadata.json"
DEFAULT_INDEX_NAME: str = "foldersWithMetadata.json"

# --- Folder naming convention ---
FOLDER_TOKEN_DELIMITER: str = "_"

# --- Document fields ---
FIELD_NAME: str = "name"
FIELD_ANTE: str = "ante"
FIELD_ICM: str = "icm"
ICM_NONE_SENTINEL: str = "none"

# --- Tags (canonical emission order) ---
TAG_HU: str = "HU"
TAG_FT: str = "FT"
TAG_ICM: str = "ICM"
TAG_ORDER: tuple = (TAG_HU, TAG_FT, TAG_ICM)

HEADS_UP_SEATS: int = 2
FINAL_TABLE_MARKER: str = "ft"

# --- Cache ---
SNAPSHOT_TTL_SECONDS: float = 600.0
