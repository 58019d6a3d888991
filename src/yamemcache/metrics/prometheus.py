from typing import Dict, List, Optional

from prometheus_client import REGISTRY, Counter, Gauge
from prometheus_client.metrics import MetricWrapperBase
from prometheus_client.registry import CollectorRegistry

from yamemcache.metrics.base import (
    SERVER_LABEL,
    BaseMetricsCollector,
    MetricDefinition,
)


class PrometheusMetricsCollector(BaseMetricsCollector):
    def __init__(
        self,
        namespace: str = "",
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        super().__init__(namespace=namespace)
        self._registry: CollectorRegistry = registry or REGISTRY
        self._counters: Dict[str, Counter] = {}
        self._gauges: Dict[str, Gauge] = {}

    def init_metrics(
        self,
        namespace: str,
        counters: List[MetricDefinition],
        gauges: List[MetricDefinition],
    ) -> None:
        namespace = self._full_namespace(namespace)
        for counter in (x for x in counters if x.name not in self._counters):
            self._counters[counter.name] = Counter(
                name=counter.name,
                documentation=counter.documentation,
                labelnames=[SERVER_LABEL],
                registry=self._registry,
                namespace=namespace,
            )
        for gauge in (x for x in gauges if x.name not in self._gauges):
            self._gauges[gauge.name] = Gauge(
                name=gauge.name,
                documentation=gauge.documentation,
                labelnames=[SERVER_LABEL],
                registry=self._registry,
                namespace=namespace,
            )

    def counter_inc(self, name: str, server: str) -> None:
        self._counters[name].labels(server).inc()

    def gauge_set(self, name: str, value: float, server: str) -> None:
        self._gauges[name].labels(server).set(value)

    def _sum_samples(self, metric: MetricWrapperBase, suffix: str) -> float:
        total = 0.0
        for family in metric.collect():
            for sample in family.samples:
                if sample.name == family.name + suffix:
                    total += sample.value
        return total

    def get_counters(self) -> Dict[str, float]:
        counters: Dict[str, float] = {}
        for name, counter in self._counters.items():
            counters[name] = self._sum_samples(counter, "_total")
        for name, gauge in self._gauges.items():
            counters[name] = self._sum_samples(gauge, "")
        return counters
