from __future__ import annotations

from datetime import datetime, timedelta

from .types import TimeWindow


def calculate_time_windows(
    global_start: datetime, global_end: datetime, batch_read_size: int
) -> list[TimeWindow]:
    """Slice [global_start, global_end) into windows of batch_read_size seconds.

    Windows are contiguous and non-overlapping; the last one is clipped to
    global_end. An empty or inverted range yields no windows.
    """
    if batch_read_size <= 0:
        raise ValueError("batch_read_size must be > 0")

    step = timedelta(seconds=batch_read_size)
    windows: list[TimeWindow] = []
    current = global_start
    while current < global_end:
        end = min(current + step, global_end)
        windows.append(TimeWindow(current, end))
        current = end
    return windows
