# =============================================================================
# MERLIN Bridge -- Package Logger
# =============================================================================

import logging

logger = logging.getLogger("merlin_bridge")
