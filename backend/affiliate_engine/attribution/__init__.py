from .resolver import AttributionOutcome, resolve_order_attribution
from .strategies import (
    NO_MATCH,
    STRATEGIES,
    AttributionMatch,
    AttributionRequest,
    Blocked,
)
from .windows import is_within_attribution_window
