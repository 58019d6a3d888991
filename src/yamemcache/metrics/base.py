from abc import ABC, abstractmethod
from typing import Dict, List, NamedTuple

# Every metric is reported per server
SERVER_LABEL = "server"


class MetricDefinition(NamedTuple):
    name: str
    documentation: str


class BaseMetricsCollector(ABC):
    """
    Sink for the counters and gauges a Connection reports, labelled
    with the connection name.

    The connection declares what it reports once:
    metrics_collector.init_metrics(
        namespace="memcache_connection",
        counters=[MetricDefinition("requests", "Requests sent")],
        gauges=[MetricDefinition("in_flight", "Requests waiting a response")],
    )
    and then updates them:
    metrics_collector.counter_inc("requests", server="host:11211")
    metrics_collector.gauge_set("in_flight", 3, server="host:11211")

    Several connections can share a collector, declaring the same
    metrics again is a no-op.
    """

    def __init__(self, namespace: str = "") -> None:
        self._namespace = namespace

    def _full_namespace(self, namespace: str) -> str:
        if self._namespace and namespace:
            return f"{self._namespace}_{namespace}"
        return self._namespace or namespace

    @abstractmethod
    def init_metrics(
        self,
        namespace: str,
        counters: List[MetricDefinition],
        gauges: List[MetricDefinition],
    ) -> None:
        ...  # pragma: no cover

    @abstractmethod
    def counter_inc(self, name: str, server: str) -> None:
        ...  # pragma: no cover

    @abstractmethod
    def gauge_set(self, name: str, value: float, server: str) -> None:
        ...  # pragma: no cover

    @abstractmethod
    def get_counters(self) -> Dict[str, float]:
        """
        Current value of every counter and gauge, summed over servers.
        """
        ...  # pragma: no cover
