"""Prometheus metrics exporter for Taskweave observability.

Renders the engine's metrics in the Prometheus text exposition format.

Metrics exposed:
- taskweave_tasks: Tasks currently in the store, by type and status
- taskweave_tasks_created_total: Tasks created since start
- taskweave_task_outcomes_total: Completed and permanently failed tasks
- taskweave_running_slots: Reserved concurrency slots by type
- taskweave_concurrency_limit: Configured concurrency by type
- taskweave_task_duration_seconds: Attempt duration histogram by type
- taskweave_throughput: Completed tasks per second (rolling window)
- taskweave_error_rate: failed / (failed + completed)

Usage:
    from taskweave.observability import PrometheusExporter

    exporter = PrometheusExporter(engine)

    @app.get("/metrics")
    async def metrics_endpoint():
        return Response(content=exporter.export(), media_type="text/plain")
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from taskweave.core.engine import TaskEngine


class PrometheusExporter:
    """Read-only view of a :class:`TaskEngine` in Prometheus format."""

    def __init__(self, engine: TaskEngine) -> None:
        self._engine = engine

    def export(self) -> str:
        """Export metrics in Prometheus text format."""
        stats = self._engine.get_queue_stats()
        metrics = stats.metrics
        running = self._engine.tracker.snapshot()
        outcomes = self._engine.outcome_totals()

        lines = [
            "# HELP taskweave_tasks Tasks currently held by the engine, by status",
            "# TYPE taskweave_tasks gauge",
        ]
        for task_type, type_stats in sorted(stats.types.items()):
            for status in ("pending", "running", "completed", "failed", "cancelled"):
                count = getattr(type_stats, status)
                lines.append(f'taskweave_tasks{{type="{task_type}",status="{status}"}} {count}')

        lines.extend(
            [
                "",
                "# HELP taskweave_tasks_created_total Tasks created since start",
                "# TYPE taskweave_tasks_created_total counter",
                f"taskweave_tasks_created_total {metrics.total_tasks}",
                "",
                "# HELP taskweave_task_outcomes_total Terminal task outcomes since start",
                "# TYPE taskweave_task_outcomes_total counter",
                f'taskweave_task_outcomes_total{{outcome="completed"}} '
                f"{outcomes['completed']}",
                f'taskweave_task_outcomes_total{{outcome="failed"}} '
                f"{outcomes['failed']}",
            ]
        )

        lines.extend(
            [
                "",
                "# HELP taskweave_running_slots Reserved concurrency slots",
                "# TYPE taskweave_running_slots gauge",
            ]
        )
        for task_type in sorted(stats.policies):
            lines.append(f'taskweave_running_slots{{type="{task_type}"}} {running.get(task_type, 0)}')

        lines.extend(
            [
                "",
                "# HELP taskweave_concurrency_limit Configured concurrency per type",
                "# TYPE taskweave_concurrency_limit gauge",
            ]
        )
        for task_type, policy in sorted(stats.policies.items()):
            lines.append(f'taskweave_concurrency_limit{{type="{task_type}"}} {policy.concurrency}')

        lines.extend(
            [
                "",
                "# HELP taskweave_task_duration_seconds Handler attempt duration in seconds",
                "# TYPE taskweave_task_duration_seconds histogram",
            ]
        )
        for task_type, histogram in sorted(self._engine.attempt_histograms().items()):
            for bound, cumulative in zip(histogram.buckets, histogram.bucket_counts, strict=True):
                lines.append(
                    f'taskweave_task_duration_seconds_bucket{{type="{task_type}",le="{bound}"}} '
                    f"{cumulative}"
                )
            lines.append(
                f'taskweave_task_duration_seconds_bucket{{type="{task_type}",le="+Inf"}} '
                f"{histogram.count}"
            )
            lines.append(
                f'taskweave_task_duration_seconds_sum{{type="{task_type}"}} '
                f"{histogram.sum_seconds:.4f}"
            )
            lines.append(
                f'taskweave_task_duration_seconds_count{{type="{task_type}"}} {histogram.count}'
            )

        lines.extend(
            [
                "",
                "# HELP taskweave_throughput Completed tasks per second over the rolling window",
                "# TYPE taskweave_throughput gauge",
                f"taskweave_throughput {metrics.throughput}",
                "",
                "# HELP taskweave_error_rate Fraction of finished tasks that failed permanently",
                "# TYPE taskweave_error_rate gauge",
                f"taskweave_error_rate {metrics.error_rate}",
            ]
        )

        return "\n".join(lines) + "\n"
