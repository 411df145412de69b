import json
import logging

from loguru import logger
from opentelemetry import trace
from opentelemetry.trace import NonRecordingSpan, SpanContext, TraceFlags

from loyalty_engine.core import logging as logging_config


def _lines(capsys) -> list[dict]:
    return [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]


def test_configure_logging_emits_json_lines_with_trace(monkeypatch, capsys) -> None:
    monkeypatch.setattr(logging_config.logging, "basicConfig", lambda **kwargs: None)
    logging_config.configure_logging(service_name="loyalty-engine", environment="test", version="1.2.3")
    try:
        logger.debug("Hidden below INFO")
        logger.bind(member_id="m-1").info("Spin recorded")

        context = SpanContext(
            trace_id=0x1234,
            span_id=0x42,
            is_remote=False,
            trace_flags=TraceFlags(TraceFlags.SAMPLED),
        )
        with trace.use_span(NonRecordingSpan(context), end_on_exit=False):
            logger.warning("Inside span")

        plain, traced = _lines(capsys)
    finally:
        logger.remove()

    assert plain["message"] == "Spin recorded"
    assert plain["level"] == "info"
    assert plain["service"] == "loyalty-engine"
    assert plain["environment"] == "test"
    assert plain["version"] == "1.2.3"
    assert plain["member_id"] == "m-1"
    assert "trace_id" not in plain

    assert traced["level"] == "warning"
    assert traced["trace_id"] == f"{0x1234:032x}"
    assert traced["span_id"] == f"{0x42:016x}"


def test_configure_logging_quiets_sqlalchemy_engine(monkeypatch, capsys) -> None:
    monkeypatch.setattr(logging_config.logging, "basicConfig", lambda **kwargs: None)
    logging_config.configure_logging(service_name="loyalty-engine", environment="test", version="1.2.3", level="debug")
    try:
        logger.debug("Visible at DEBUG")
        lines = _lines(capsys)
    finally:
        logger.remove()

    assert [line["message"] for line in lines] == ["Visible at DEBUG"]
    assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
