from sensor_live.connection import ConnectionManager, backoff_delay_ms
from sensor_live.models import ChartRow, ConnectionState, ConnectionStatus, LiveStat, Reading, parse_reading
from sensor_live.series import align_series
from sensor_live.stats import StatsReconciler

__all__ = [
    "ChartRow",
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    "LiveStat",
    "Reading",
    "StatsReconciler",
    "align_series",
    "backoff_delay_ms",
    "parse_reading",
]
