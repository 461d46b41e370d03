"""Central configuration for hybrid-recall.

Configuration is organized into logical groups:
- Path configuration
- Backend configuration
- Ranking configuration
- Logging configuration
- Per-operation settings
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# =============================================================================
# PATH CONFIGURATION
# =============================================================================
BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("HYBRID_RECALL_DATA_DIR", str(BASE_DIR / "data")))

# =============================================================================
# BACKEND CONFIGURATION
# =============================================================================
# Process-wide default backend. Empty means "use the built-in default".
VECTOR_BACKEND = os.getenv("HYBRID_RECALL_VECTOR_BACKEND", "").strip()
MAX_CACHED_BACKENDS = int(os.getenv("HYBRID_RECALL_MAX_CACHED_BACKENDS", "5"))

# Storage plugin serving the lancedb / qdrant / milvus backends
PLUGIN_BASE_URL = os.getenv(
    "HYBRID_RECALL_PLUGIN_URL", "http://127.0.0.1:8000/api/plugins/similharity"
).rstrip("/")
PLUGIN_TIMEOUT = float(os.getenv("HYBRID_RECALL_PLUGIN_TIMEOUT", "30"))
PLUGIN_LIST_LIMIT = int(os.getenv("HYBRID_RECALL_PLUGIN_LIST_LIMIT", "10000"))

EMBEDDING_SOURCE = os.getenv("HYBRID_RECALL_EMBEDDING_SOURCE", "transformers")
DEFAULT_EMBED_MODEL = os.getenv("HYBRID_RECALL_EMBED_MODEL", "all-MiniLM-L6-v2")
EMBEDDING_DEVICE = os.getenv("HYBRID_RECALL_EMBED_DEVICE", "cpu")

# =============================================================================
# RANKING CONFIGURATION
# =============================================================================
SCORING_MODES = ("vector", "hybrid", "rrf")
SCORING_MODE = os.getenv("HYBRID_RECALL_SCORING_MODE", "hybrid").lower()
BM25_K1 = float(os.getenv("HYBRID_RECALL_BM25_K1", "1.5"))
BM25_B = float(os.getenv("HYBRID_RECALL_BM25_B", "0.75"))
# Fusion weights: combined = alpha * vector + beta * normalized BM25
HYBRID_ALPHA = float(os.getenv("HYBRID_RECALL_ALPHA", "0.5"))
HYBRID_BETA = float(os.getenv("HYBRID_RECALL_BETA", "0.5"))
# RRF constant (standard value from literature)
RRF_K = int(os.getenv("HYBRID_RECALL_RRF_K", "60"))
TOP_K = int(os.getenv("HYBRID_RECALL_TOP_K", "5"))
# Fusion modes fetch a wider candidate window than they return
FETCH_MULTIPLIER = int(os.getenv("HYBRID_RECALL_FETCH_MULTIPLIER", "3"))
MAX_FETCH_K = int(os.getenv("HYBRID_RECALL_MAX_FETCH_K", "50"))
SCORE_THRESHOLD = float(os.getenv("HYBRID_RECALL_SCORE_THRESHOLD", "0.0"))

# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================
LOG_LEVEL = os.getenv("HYBRID_RECALL_LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("HYBRID_RECALL_LOG_FORMAT", "plain")  # plain|json
LOG_FILE_PATH = os.getenv("HYBRID_RECALL_LOG_FILE", "")
LOG_REDACT_QUERIES = (
    os.getenv("HYBRID_RECALL_LOG_REDACT_QUERIES", "false").lower() == "true"
)


# =============================================================================
# PER-OPERATION SETTINGS
# =============================================================================
@dataclass
class RetrievalSettings:
    """Settings passed to backends and the ranking entry point.

    Every field defaults to the process-wide value above, so callers only
    override what differs for one operation.
    """

    vector_backend: Optional[str] = None
    scoring_mode: str = SCORING_MODE
    top_k: int = TOP_K
    bm25_k1: float = BM25_K1
    bm25_b: float = BM25_B
    alpha: float = HYBRID_ALPHA
    beta: float = HYBRID_BETA
    rrf_k: int = RRF_K
    score_threshold: float = SCORE_THRESHOLD
    embedding_source: str = EMBEDDING_SOURCE
    embed_model: str = DEFAULT_EMBED_MODEL
    plugin_url: str = PLUGIN_BASE_URL
    plugin_timeout: float = PLUGIN_TIMEOUT
    data_dir: Path = DATA_DIR

    def __post_init__(self) -> None:
        self.scoring_mode = self.scoring_mode.lower()
        if self.scoring_mode not in SCORING_MODES:
            raise ValueError(
                f"Unknown scoring mode: {self.scoring_mode}. "
                f"Valid options: {', '.join(SCORING_MODES)}"
            )
        if self.top_k < 0:
            raise ValueError("top_k must be non-negative")
