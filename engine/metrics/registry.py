"""
Metrics Registry
Central lookup of every metric calculator, with per-metric and batch result caches.

Registering an id twice replaces the lookup entry but keeps both in their category
lists, so peg_ratio and price_to_fcf resolve to the valuation versions.
"""
import logging
import time
from datetime import datetime
from typing import Dict, List, Optional, Any

from core.cache import TTLCache
from engine.metrics.types import CATEGORIES, MetricCalculator, StockData, NEUTRAL, GOOD, BAD
from engine.metrics.fundamental import fundamental_metrics
from engine.metrics.valuation import valuation_metrics
from engine.metrics.quality import quality_metrics
from engine.metrics.growth import growth_metrics
from engine.metrics.efficiency import efficiency_metrics
from engine.metrics.technical import technical_metrics
from engine.metrics.dupont import dupont_metrics
from engine.metrics.liquidity import liquidity_metrics
from engine.metrics.leverage import leverage_metrics
from engine.metrics.cashflow import cashflow_metrics

logger = logging.getLogger(__name__)

CACHE_TTL_SECONDS = 5 * 60
MAX_CACHE_SIZE = 1000

SUMMARY_CATEGORIES = list(CATEGORIES)

INTERPRETATION_SCORES = {GOOD: 1.0, NEUTRAL: 0.5, BAD: 0.0}


class MetricsRegistry:
    """Registry of metric calculators keyed by id and grouped by category."""

    def __init__(self, cache_ttl: float = CACHE_TTL_SECONDS, max_cache_size: int = MAX_CACHE_SIZE):
        self._metrics: Dict[str, MetricCalculator] = {}
        self._by_category: Dict[str, List[MetricCalculator]] = {}
        self._cache = TTLCache(default_ttl=cache_ttl, max_size=max_cache_size, name="metrics")
        self._batch_cache = TTLCache(default_ttl=cache_ttl, max_size=max_cache_size, name="metrics_batch")

        for group in (fundamental_metrics, valuation_metrics, quality_metrics, growth_metrics,
                      efficiency_metrics, technical_metrics, dupont_metrics, liquidity_metrics,
                      leverage_metrics, cashflow_metrics):
            for metric in group:
                self.register(metric)

    # --- Lookup ---

    def register(self, metric: MetricCalculator):
        self._metrics[metric.id] = metric
        self._by_category.setdefault(metric.category, []).append(metric)

    def get(self, metric_id: str) -> Optional[MetricCalculator]:
        return self._metrics.get(metric_id)

    def get_all(self) -> List[MetricCalculator]:
        return list(self._metrics.values())

    def get_by_category(self, category: str) -> List[MetricCalculator]:
        return list(self._by_category.get(category, []))

    def get_categories(self) -> List[str]:
        return list(self._by_category.keys())

    def count(self) -> int:
        return len(self._metrics)

    def search(self, query: str) -> List[MetricCalculator]:
        """Case-insensitive substring match on name, description or id."""
        q = (query or '').lower()
        return [
            m for m in self.get_all()
            if q in m.name.lower() or q in m.description.lower() or q in m.id.lower()
        ]

    def is_valid_metric(self, metric_id: str) -> bool:
        return metric_id in self._metrics

    # --- Calculation ---

    def calculate_metric(self, metric_id: str, data: StockData) -> Dict[str, Any]:
        """Calculate one metric. Never raises; failures are reported in the result's `error`."""
        metric = self.get(metric_id)
        if metric is None:
            return {
                'id': metric_id,
                'name': 'Unknown Metric',
                'value': None,
                'formatted': 'N/A',
                'interpretation': NEUTRAL,
                'error': f'Metric "{metric_id}" not found',
            }

        cache_key = f"{metric_id}:{data.symbol}"
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        try:
            value = metric.calculate(data)
            result = {
                'id': metric.id,
                'name': metric.name,
                'short_name': metric.short_name,
                'category': metric.category,
                'value': value,
                'formatted': metric.format(value) if value is not None else 'N/A',
                'interpretation': metric.interpretation(value, data) if value is not None else NEUTRAL,
                'description': metric.description,
                'benchmark': metric.benchmark,
            }
        except Exception as e:
            logger.warning(f"Metric {metric_id} failed for {data.symbol}: {e}")
            return {
                'id': metric.id,
                'name': metric.name,
                'short_name': metric.short_name,
                'category': metric.category,
                'value': None,
                'formatted': 'Error',
                'interpretation': NEUTRAL,
                'error': str(e) or 'Calculation error',
            }

        self._cache.set(cache_key, result)
        return result

    def calculate_metrics(self, metric_ids: List[str], data: StockData) -> Dict[str, Any]:
        """Calculate several metrics, collecting per-id errors into meta."""
        start = time.perf_counter()
        results = {}
        errors = {}
        calculated = 0
        failed = 0

        for metric_id in metric_ids:
            result = self.calculate_metric(metric_id, data)
            results[metric_id] = result
            if result.get('error'):
                errors[metric_id] = result['error']
                failed += 1
            else:
                calculated += 1

        return {
            'symbol': data.symbol,
            'timestamp': time.time(),
            'metrics': results,
            'calculated_at': datetime.now().isoformat(),
            'meta': {
                'total_metrics': len(metric_ids),
                'calculated': calculated,
                'failed': failed,
                'errors': errors or None,
                'calculation_time_ms': round((time.perf_counter() - start) * 1000),
            },
        }

    def calculate_all(self, data: StockData) -> Dict[str, Any]:
        cache_key = f"batch:all:{data.symbol}"
        cached = self._batch_cache.get(cache_key)
        if cached is not None:
            return cached
        result = self.calculate_metrics([m.id for m in self.get_all()], data)
        self._batch_cache.set(cache_key, result)
        return result

    def calculate_by_category(self, category: str, data: StockData) -> Dict[str, Any]:
        cache_key = f"batch:{category}:{data.symbol}"
        cached = self._batch_cache.get(cache_key)
        if cached is not None:
            return cached
        result = self.calculate_metrics([m.id for m in self.get_by_category(category)], data)
        self._batch_cache.set(cache_key, result)
        return result

    # --- Cache control ---

    def clear_cache(self):
        self._cache.clear()
        self._batch_cache.clear()

    def clear_symbol_cache(self, symbol: str):
        marker = f":{symbol}"
        self._cache.clear_matching(lambda key: marker in key)
        self._batch_cache.clear_matching(lambda key: marker in key)

    # --- Summaries ---

    def get_summary(self) -> Dict[str, int]:
        """Number of metrics listed under each main category."""
        return {category: len(self._by_category.get(category, [])) for category in SUMMARY_CATEGORIES}


def calculate_overall_score(batch_result: Dict[str, Any]) -> Dict[str, Any]:
    """
    Average interpretation score (good=1, neutral=0.5, bad=0) over metrics that produced
    a value without error, scaled to 0-100 and rounded.
    """
    breakdown = {}
    for metric_id, result in batch_result.get('metrics', {}).items():
        if result.get('value') is not None and not result.get('error'):
            breakdown[metric_id] = INTERPRETATION_SCORES.get(result.get('interpretation'), 0.5)

    score = (sum(breakdown.values()) / len(breakdown)) * 100 if breakdown else 0
    return {'score': int(round(score)), 'breakdown': breakdown}


def is_valid_category(category: str) -> bool:
    return category in SUMMARY_CATEGORIES


# Singleton
metrics_registry = MetricsRegistry()
