# test_metrics_logger.py
#
# Imports
import json
import logging
import sys

import pytest
from loguru import logger
#
# Local Imports
from zonesync.Logging_Config import InterceptHandler, configure_logging
from zonesync.Metrics.metrics_logger import METRIC_LEVEL, MetricsLogger, log_counter, timeit


@pytest.fixture
def metric_records():
    """Captures METRIC-level loguru records."""
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level=METRIC_LEVEL,
                            filter=lambda record: record["level"].name == METRIC_LEVEL)
    yield records
    logger.remove(handler_id)


def by_event(records, event):
    return [r["extra"] for r in records if r["extra"].get("event") == event]


class TestMetricsLogger:
    def test_counter_is_structured(self, metric_records):
        log_counter("widgets_total", 3, labels={"zone": "notes"})
        extra = by_event(metric_records, "widgets_total")[0]
        assert extra["type"] == "counter"
        assert extra["value"] == 3
        assert extra["labels"] == {"zone": "notes"}
        assert "timestamp" in extra

    def test_base_labels_are_merged(self, metric_records):
        metrics = MetricsLogger(base_labels={"client_id": "c1", "zone": "default"})
        metrics.log_gauge("queue_depth", 7, labels={"zone": "notes"})
        extra = by_event(metric_records, "queue_depth")[0]
        assert extra["type"] == "gauge"
        assert extra["labels"] == {"client_id": "c1", "zone": "notes"}

    def test_timeit_records_success(self, metric_records):
        @timeit("work_seconds", labels={"kind": "unit"})
        def work():
            return 42

        assert work() == 42
        extra = by_event(metric_records, "work_seconds")[0]
        assert extra["type"] == "histogram"
        assert extra["labels"] == {"function": "work", "kind": "unit", "status": "success"}
        assert extra["value"] >= 0

    def test_timeit_records_failure_and_reraises(self, metric_records):
        @timeit(log_call_count=True)
        def broken():
            raise KeyError("nope")

        with pytest.raises(KeyError):
            broken()
        assert by_event(metric_records, "broken_duration_seconds")[0]["labels"]["status"] == "failure"
        assert by_event(metric_records, "broken_calls_total")[0]["value"] == 1

    def test_engine_emits_sync_metrics(self, metric_records, engine, store):
        store.save_record("notes", "a", "Note")
        engine.send_changes()

        assert by_event(metric_records, "sync_send_duration_seconds")
        confirmed = by_event(metric_records, "sync_records_confirmed_total")[0]
        assert confirmed["value"] == 1
        assert confirmed["labels"]["client_id"] == "test_client"


@pytest.fixture
def restore_logging():
    root = logging.getLogger()
    level = root.level
    yield
    logger.remove()
    logger.add(sys.stderr)
    root.handlers = [h for h in root.handlers if not isinstance(h, InterceptHandler)]
    root.setLevel(level)


class TestConfigureLogging:
    def test_sinks_split_application_logs_and_metrics(self, tmp_path, restore_logging):
        app_log = tmp_path / "logs" / "app.log"
        metrics_log = tmp_path / "logs" / "metrics.json"
        configure_logging(log_level="DEBUG", console=False, app_log_path=app_log, metrics_log_path=metrics_log)

        logger.info("plain application message")
        log_counter("files_synced_total", 2)
        logging.getLogger("zonesync.stdlib").warning("message from the logging module")
        logger.complete()
        logger.remove()

        app_text = app_log.read_text()
        assert "plain application message" in app_text
        assert "message from the logging module" in app_text
        assert "files_synced_total" not in app_text

        lines = [json.loads(line) for line in metrics_log.read_text().splitlines() if line.strip()]
        assert [line["record"]["extra"]["event"] for line in lines] == ["files_synced_total"]
        assert lines[0]["record"]["extra"]["value"] == 2

    def test_file_sinks_can_be_disabled(self, tmp_path, restore_logging, isolated_config):
        configure_logging(console=False, app_log_path=None, metrics_log_path=None)
        logger.info("goes nowhere")
        assert list(tmp_path.rglob("*.log")) == []
