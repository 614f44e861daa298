# Sales-ops metrics package
# Exposes the pure builders and the async dashboard entry points.

from .definitions import MetricDefinition, METRIC_TEMPLATES  # noqa: F401
from .engine import MetricValue, compute_metric, calculate_metrics  # noqa: F401
from .attribution import AttributionFilters, AttributionResult, build_attribution_tree  # noqa: F401
from .leaderboard import SetterStats, build_setter_leaderboard  # noqa: F401
from .loaders import MetricsFilters, MetricsQueryError  # noqa: F401
