"""
Tests for prompt variant selection and metrics.

Each test builds its own VariantRegistry with a seeded random generator, so
nothing leaks between tests or into the app-wide registry.
"""

import logging
import random
import threading
from dataclasses import replace

import pytest

from app.errors import InvalidInputError, VariantNotFoundError
from app.models.canvas import CanvasElement, ElementKind, Size
from app.models.sessions import PromptVariant
from app.services.variants import VariantRegistry, normalize_weights, sanitize_user_id

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _registry(seed=1, variants=None):
    return VariantRegistry(variants=variants, rng=random.Random(seed))


def _seed_metrics(registry, variant_id, ratings):
    for rating in ratings:
        registry.record_metrics(variant_id, rating, 100.0)


def test_default_variants_split_evenly():
    """The two built-in variants start at 50/50."""
    registry = _registry()
    assert registry.active_weights() == {"original": 50, "enhanced": 50}
    logger.info("✓ Default weights")


def test_sanitize_user_id():
    """Ids are cut to 100 chars, stripped of special characters, empty -> anonymous."""
    assert sanitize_user_id("user-42") == "user-42"
    assert sanitize_user_id("") == "anonymous"
    assert sanitize_user_id("   ") == "anonymous"
    assert sanitize_user_id(None) == "anonymous"
    assert sanitize_user_id("a b!c@d_e") == "abcd_e"
    assert sanitize_user_id("x" * 150) == "x" * 100
    logger.info("✓ User ids sanitised")


def test_sticky_assignment():
    """The same user always gets the same variant."""
    registry = _registry()
    first = registry.assign("user-42")
    for _ in range(20):
        assert registry.assign("user-42").id == first.id
    logger.info("✓ Sticky assignment for user-42 -> %s", first.id)


def test_empty_user_uses_anonymous_bucket():
    """'' and other unusable ids resolve to the anonymous assignment."""
    registry = _registry()
    variant = registry.assign("")
    assert registry.assignment_for("anonymous") == variant.id
    assert registry.assign("!!!").id == variant.id
    logger.info("✓ Anonymous bucket")


def test_weighted_draw_follows_weights():
    """A 100/0 split always yields the weighted variant."""
    variants = [
        PromptVariant(id="a", name="A", template="t", weight=100),
        PromptVariant(id="b", name="B", template="t", weight=0),
    ]
    registry = _registry(variants=variants)
    for index in range(50):
        assert registry.assign(f"user{index}").id == "a"
    logger.info("✓ Weighted draw honours zero weight")


def test_concurrent_assignment_is_stable():
    """Concurrent first calls for one user agree on a single variant."""
    registry = _registry(seed=3)
    results = []

    def worker():
        results.append(registry.assign("racer").id)

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(set(results)) == 1
    logger.info("✓ No flapping under concurrency")


def test_record_metrics_running_averages():
    """Average rating and success rate follow the running formulas."""
    registry = _registry()
    _seed_metrics(registry, "original", [5, 3, 4])
    metrics = registry.get("original").metrics

    assert metrics.total_uses == 3
    assert abs(metrics.avg_rating - 4.0) < 1e-9
    assert metrics.success_count == 2
    assert abs(metrics.success_rate - 200 / 3) < 1e-9
    logger.info("✓ Running metrics")


def test_record_metrics_rejects_bad_input_without_mutation():
    """Out-of-range ratings and negative durations leave metrics untouched."""
    registry = _registry()
    before = replace(registry.get("original").metrics)

    for rating, duration in ((0, 10.0), (6, 10.0), (True, 10.0), (3, -1.0), (3, float("nan"))):
        with pytest.raises(InvalidInputError):
            registry.record_metrics("original", rating, duration)

    assert registry.get("original").metrics == before
    with pytest.raises(VariantNotFoundError):
        registry.record_metrics("missing", 5, 1.0)
    logger.info("✓ Bad metrics rejected")


def test_concurrent_metrics_have_no_lost_updates():
    """Parallel feedback for one variant is fully counted."""
    registry = _registry()

    def worker():
        for _ in range(100):
            registry.record_metrics("enhanced", 5, 10.0)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    metrics = registry.get("enhanced").metrics
    assert metrics.total_uses == 800
    assert metrics.success_count == 800
    logger.info("✓ 800 concurrent updates recorded")


def test_readers_never_see_partial_metrics():
    """Weight optimisation and reports running during feedback see consistent totals."""
    registry = _registry()
    _seed_metrics(registry, "enhanced", [3] * 12)
    done = threading.Event()
    problems = []

    def writer(rating):
        for _ in range(300):
            registry.record_metrics("original", rating, 50.0)

    def check(metrics):
        if metrics.total_uses == 0:
            return
        if metrics.success_count > metrics.total_uses:
            problems.append(f"success_count {metrics.success_count} > total_uses {metrics.total_uses}")
        expected_rate = metrics.success_count / metrics.total_uses * 100.0
        if abs(metrics.success_rate - expected_rate) > 1e-6:
            problems.append(f"success_rate {metrics.success_rate} != {expected_rate}")
        # Only ratings of 5 and 1 are recorded.
        expected_avg = 1 + 4 * metrics.success_count / metrics.total_uses
        if abs(metrics.avg_rating - expected_avg) > 1e-6:
            problems.append(f"avg_rating {metrics.avg_rating} != {expected_avg}")

    def reader():
        while not done.is_set():
            weights = registry.auto_optimize_weights()
            if sum(weights.values()) != 100:
                problems.append(f"weights {weights} do not sum to 100")
            for variant in registry.performance_comparison():
                if variant.id == "original":
                    check(variant.metrics)

    writers = [threading.Thread(target=writer, args=(rating,)) for rating in (5, 1, 5, 1)]
    readers = [threading.Thread(target=reader) for _ in range(2)]
    for thread in readers + writers:
        thread.start()
    for thread in writers:
        thread.join()
    done.set()
    for thread in readers:
        thread.join()

    metrics = registry.get("original").metrics
    check(metrics)
    assert problems == []
    assert metrics.total_uses == 1200
    assert metrics.success_count == 600
    assert abs(metrics.avg_rating - 3.0) < 1e-9
    logger.info("✓ Metrics snapshots stayed consistent under concurrent feedback")


def test_auto_optimize_two_variants():
    """40 uses each, 4.5 vs 3.0 average rating -> 70 / 30."""
    registry = _registry()
    _seed_metrics(registry, "original", [5, 4] * 20)
    _seed_metrics(registry, "enhanced", [3] * 40)

    weights = registry.auto_optimize_weights()
    assert weights == {"original": 70, "enhanced": 30}
    assert sum(weights.values()) == 100
    logger.info("✓ Auto-optimised to %s", weights)


def test_auto_optimize_needs_data():
    """Without any variant above 10 uses the weights do not move."""
    registry = _registry()
    _seed_metrics(registry, "original", [5] * 10)
    assert registry.auto_optimize_weights() == {"original": 50, "enhanced": 50}
    logger.info("✓ No optimisation without data")


def test_auto_optimize_minimum_share():
    """Poor performers keep at least a small share and weights still sum to 100."""
    registry = _registry()
    registry.add_variant("third", "Third", "template")
    _seed_metrics(registry, "original", [5] * 20)
    _seed_metrics(registry, "enhanced", [4] * 20)
    _seed_metrics(registry, "third", [1] * 20)

    weights = registry.auto_optimize_weights()
    assert sum(weights.values()) == 100
    assert max(weights, key=weights.get) == "original"
    assert weights["third"] >= 4
    logger.info("✓ Minimum share kept: %s", weights)


def test_weights_sum_to_100_after_registry_changes():
    """addVariant and deactivateVariant keep active weights at exactly 100."""
    registry = _registry()
    registry.add_variant("v3", "Variant 3", "template")
    assert sum(registry.active_weights().values()) == 100
    assert sorted(registry.active_weights().values()) == [33, 33, 34]

    registry.deactivate_variant("original")
    weights = registry.active_weights()
    assert "original" not in weights
    assert sum(weights.values()) == 100
    assert registry.get("original").weight == 0

    with pytest.raises(InvalidInputError):
        registry.add_variant("v3", "dup", "template")
    with pytest.raises(VariantNotFoundError):
        registry.deactivate_variant("missing")
    logger.info("✓ Weights normalised after changes")


def test_deactivated_variant_is_redrawn():
    """A user pinned to a deactivated variant is moved to an active one."""
    registry = _registry()
    variant = registry.assign("user-1")
    registry.deactivate_variant(variant.id)
    replacement = registry.assign("user-1")
    assert replacement.id != variant.id
    assert replacement.active
    logger.info("✓ Re-drawn after deactivation")


def test_normalize_weights_largest_remainder():
    assert normalize_weights({"a": 1, "b": 1, "c": 1}) == {"a": 34, "b": 33, "c": 33}
    assert normalize_weights({"a": 0, "b": 0}) == {"a": 50, "b": 50}
    assert sum(normalize_weights({"a": 70, "b": 5, "c": 5, "d": 5, "e": 5, "f": 5, "g": 5}).values()) == 100


def test_significance_requires_data():
    """Fewer than 30 uses per variant is never significant."""
    registry = _registry()
    _seed_metrics(registry, "original", [5] * 29)
    _seed_metrics(registry, "enhanced", [1] * 40)
    result = registry.calculate_significance("original", "enhanced")
    assert not result.significant
    assert result.confidence == 0
    logger.info("✓ Insufficient data reported")


def test_significance_detects_clear_winner():
    """A large success-rate gap with enough samples is significant."""
    registry = _registry()
    _seed_metrics(registry, "original", [5] * 35 + [2] * 5)
    _seed_metrics(registry, "enhanced", [5] * 10 + [2] * 30)
    result = registry.calculate_significance("original", "enhanced")

    assert result.significant
    assert result.z_score > 1.96
    assert result.winner == "original"
    assert 95 <= result.confidence <= 99
    logger.info("✓ z=%.2f, confidence %s%%", result.z_score, result.confidence)


def test_significance_similar_variants():
    registry = _registry()
    _seed_metrics(registry, "original", [5, 2] * 20)
    _seed_metrics(registry, "enhanced", [5, 2] * 20)
    result = registry.calculate_significance("original", "enhanced")
    assert not result.significant
    assert result.z_score == 0.0
    assert result.winner is None


def test_render_prompt_fills_placeholders():
    """Template placeholders are substituted and the JSON format block is kept intact."""
    registry = _registry()
    elements = [CanvasElement(id="el-1", kind=ElementKind.TEXT, left=10, top=20, width=100, height=30, text="Hi")]
    prompt = registry.render_prompt("enhanced", Size(800, 600), Size(1600, 900), elements)

    assert "800x600" in prompt
    assert "1600x900" in prompt
    assert "1.33 -> 1.78" in prompt
    assert '"id": "el-1"' in prompt
    assert '"placements"' in prompt
    assert "{objectsData}" not in prompt
    logger.info("✓ Prompt rendered")


def test_performance_comparison_order():
    registry = _registry()
    _seed_metrics(registry, "enhanced", [5] * 5)
    _seed_metrics(registry, "original", [3] * 5)
    assert [v.id for v in registry.performance_comparison()] == ["enhanced", "original"]
