from collections import deque
from dataclasses import dataclass, field
import datetime as dt
from typing import Deque, Iterable, Optional

from crud import to_dt
from geo import grid_key
from config import HEATMAP_MAX_TIMESTAMPS
from utils.variables import HEATMAP_SCALE


@dataclass
class HeatmapCell:
    key: tuple                       # integer grid indices (lat * scale, lon * scale)
    latitude: float
    longitude: float
    count: int = 0
    first_seen: Optional[dt.datetime] = None
    last_seen: Optional[dt.datetime] = None
    times: Deque[dt.datetime] = field(default_factory=deque)
    truncated: bool = False

    def as_dict(self):
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "count": self.count,
            "first_seen": self.first_seen.isoformat() if self.first_seen else None,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "times": [t.isoformat() for t in self.times],
            "truncated": self.truncated,
        }


def build_heatmap(pings: Iterable, scale: int = HEATMAP_SCALE,
                  max_timestamps: int = HEATMAP_MAX_TIMESTAMPS) -> dict:
    """
    Bin pings into a fixed 1/scale degree grid (~111 m at scale=1000).

    Each cell keeps the most recent `max_timestamps` timestamps; `truncated`
    tells the caller the list is partial and raw pings should be fetched instead.
    Only non-empty cells are returned. Sum of counts == total_points.
    """
    cells = {}
    total = 0

    for p in pings:
        key = grid_key(float(p.lat), float(p.lon), scale)
        cell = cells.get(key)
        if cell is None:
            cell = HeatmapCell(
                key=key,
                latitude=key[0] / scale,
                longitude=key[1] / scale,
                times=deque(maxlen=max(max_timestamps, 0)),
            )
            cells[key] = cell

        ts = to_dt(p.recorded_at)
        cell.count += 1
        if cell.first_seen is None or ts < cell.first_seen:
            cell.first_seen = ts
        if cell.last_seen is None or ts > cell.last_seen:
            cell.last_seen = ts
        cell.times.append(ts)
        if cell.count > len(cell.times):
            cell.truncated = True
        total += 1

    return {
        "cells": [c.as_dict() for c in cells.values()],
        "total_points": total,
        "resolution_deg": 1 / scale,
    }
