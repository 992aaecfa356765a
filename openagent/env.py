"""Agent runtime environment and trace-route options."""

from __future__ import annotations

import socket
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, DefaultDict, Mapping, Optional


@dataclass(frozen=True)
class TraceOptions:
    """Trace-route settings read from the agent configuration."""

    onoff: int = 0
    top_n: int = 5
    max_hop: int = 30
    measurement: int = 3
    syn_port: int = -1
    timeout: int = -1
    parallel: int = 1
    channel_size: int = 1000
    channel_limit_percent: int = 70
    logger: Any = None


_TRACE_KEYS = (
    ("onoff", "traceRoute", 0),
    ("top_n", "traceTopN", 5),
    ("max_hop", "traceMaxHop", 30),
    ("measurement", "traceMeasurementCount", 3),
    ("syn_port", "traceTcpSynPort", -1),
    ("timeout", "traceTimeout", -1),
    ("parallel", "traceParallelCount", 1),
    ("channel_size", "traceChannelSize", 1000),
    ("channel_limit_percent", "traceChannelLimitPercent", 70),
)


def _config_int(config: Mapping[str, Any], key: str, default: int) -> int:
    value = config.get(key, default)
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


@dataclass
class Env:
    """Shared runtime state of the agent.

    Missing integer options read as 0 and missing string options as "".
    """

    k8s: bool = False
    public_ip: str = ""
    config: Mapping[str, Any] = field(default_factory=dict)
    host_name: str = field(default_factory=socket.gethostname)
    int_options: DefaultDict[str, int] = field(default_factory=lambda: defaultdict(int))
    string_options: DefaultDict[str, str] = field(default_factory=lambda: defaultdict(str))
    pcode: int = 0
    npm_home: str = ""
    logger: Optional[Any] = None

    def trace_options(self) -> TraceOptions:
        """Return the trace-route options, using defaults for missing keys."""
        values = {name: _config_int(self.config, key, default) for name, key, default in _TRACE_KEYS}
        return TraceOptions(logger=self.logger, **values)