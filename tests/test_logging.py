# ============================================================================
# LOGGING TESTS
# ============================================================================
# STATUS: Tests - Structured logging
# PURPOSE: Verify context propagation and formatter output
# CREATED: 19 OCT 2026
# ============================================================================
"""
Structured Logging Tests

Run with:
    pytest tests/test_logging.py -v
"""

import asyncio
import json
import logging

from core.logging import (
    ComponentType,
    HumanFormatter,
    StructuredFormatter,
    get_current_context,
    get_logger,
    log_checkpoint,
    log_context,
)


def _record(message: str, **attrs) -> logging.LogRecord:
    record = logging.LogRecord("genflow.test", logging.INFO, __file__, 10, message, None, None)
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


class TestLogContext:

    def test_nesting_restores_parent(self):
        with log_context(execution_id="exec-1"):
            with log_context(node_id="upscale", queue_job_id=7, attempt=2):
                inner = get_current_context()
            outer = get_current_context()

        assert inner.execution_id == "exec-1"
        assert inner.node_id == "upscale"
        assert inner.extra == {"attempt": 2}
        assert outer.node_id is None
        assert get_current_context().execution_id is None

    def test_tasks_do_not_share_context(self):
        async def worker(name):
            with log_context(node_id=name):
                await asyncio.sleep(0.01)
                return get_current_context().node_id

        async def scenario():
            return await asyncio.gather(worker("a"), worker("b"), worker("c"))

        assert asyncio.run(scenario()) == ["a", "b", "c"]


class TestFormatters:

    def test_structured_output(self):
        formatter = StructuredFormatter(include_source=False)
        with log_context(execution_id="exec-1", node_id="n1"):
            line = formatter.format(_record("Node finished", extra={"attempt": 1}))

        data = json.loads(line)
        assert data["message"] == "Node finished"
        assert data["level"] == "INFO"
        assert data["context"] == {"execution_id": "exec-1", "node_id": "n1"}
        assert data["data"] == {"attempt": 1}

    def test_human_output(self):
        with log_context(execution_id="0123456789abcdef", node_id="n1", queue_job_id=3):
            line = HumanFormatter().format(_record("Queued"))
        assert "[exec=01234567, node=n1, job=3]" in line
        assert line.endswith("Queued")


class TestLoggers:

    def test_context_logger_adds_component(self, caplog):
        logger = get_logger("genflow.test.component", ComponentType.RECOVERY)
        with caplog.at_level(logging.INFO, logger="genflow.test.component"):
            with log_context(execution_id="exec-9"):
                logger.info("Sweep done")

        record = caplog.records[-1]
        assert record.extra["component"] == "recovery"
        assert record.extra["execution_id"] == "exec-9"

    def test_checkpoint(self, caplog):
        with caplog.at_level(logging.INFO, logger="checkpoint"):
            with log_context(node_id="n1"):
                log_checkpoint("node_completed", {"ok": True})

        record = caplog.records[-1]
        assert record.getMessage() == "CHECKPOINT: node_completed"
        assert record.extra["checkpoint"] == "node_completed"
        assert record.extra["node_id"] == "n1"
        assert record.extra["data"] == {"ok": True}
