import json
import logging
from unittest.mock import patch

import pytest

from bulkmerge.utils.logging_context import (
    LoggingContext,
    OperationMetrics,
    OperationType,
    StructuredLogger,
    create_logging_context,
    get_logging_context,
    set_logging_context,
)


@pytest.fixture(autouse=True)
def suppress_bulkmerge_logging():
    logger = logging.getLogger("bulkmerge")
    old_propagate = logger.propagate
    logger.propagate = False
    yield
    logger.propagate = old_propagate


class TestOperationMetrics:
    def test_elapsed_ms_none_when_no_end_time(self):
        assert OperationMetrics(start_time=1.0).elapsed_ms is None

    def test_elapsed_ms_correct_value(self):
        assert OperationMetrics(start_time=1.0, end_time=1.5).elapsed_ms == 500.0

    def test_to_dict_only_non_none_fields(self):
        assert OperationMetrics().to_dict() == {}

    def test_to_dict_all_fields_populated(self):
        metrics = OperationMetrics(start_time=0.0, end_time=0.25, rows_in=10, rows_out=8, extra={"batches": 2})
        assert metrics.to_dict() == {"elapsed_ms": 250.0, "rows_in": 10, "rows_out": 8, "batches": 2}


class TestStructuredLogger:
    def test_init_default(self):
        logger = StructuredLogger()
        assert logger.structured is False
        assert logger.level == logging.INFO
        assert len(logger._secrets) == 0

    def test_driver_loggers_quieted(self):
        StructuredLogger(level="DEBUG")
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING
        assert logging.getLogger("pyodbc").level == logging.WARNING

    @pytest.mark.parametrize("value", [None, "", "   "])
    def test_register_secret_ignores_invalid(self, value):
        logger = StructuredLogger(structured=True)
        logger.register_secret(value)
        assert len(logger._secrets) == 0

    def test_redact_replaces_secrets(self):
        logger = StructuredLogger(structured=True)
        logger.register_secret("password123")
        assert logger._redact("PWD=password123;") == "PWD=[REDACTED];"

    def test_structured_info_prints_json(self, capsys):
        logger = StructuredLogger(structured=True, level="DEBUG")
        logger.info("test message", key="val")
        parsed = json.loads(capsys.readouterr().out.strip())
        assert parsed["level"] == "INFO"
        assert parsed["message"] == "test message"
        assert parsed["key"] == "val"
        assert "timestamp" in parsed

    def test_structured_serializes_non_json_values(self, capsys):
        logger = StructuredLogger(structured=True)
        logger.info("merged", match_on=("Code",), amount=object())
        parsed = json.loads(capsys.readouterr().out.strip())
        assert parsed["match_on"] == ["Code"]

    def test_structured_redacts_secrets_in_kwargs(self, capsys):
        logger = StructuredLogger(structured=True)
        logger.register_secret("s3cr3t")
        logger.info("connecting", dsn="UID=sa;PWD=s3cr3t;")
        parsed = json.loads(capsys.readouterr().out.strip())
        assert "s3cr3t" not in parsed["dsn"]

    def test_human_readable_with_kwargs(self):
        logger = StructuredLogger(structured=False)
        logger.logger.propagate = False
        with patch.object(logger.logger, "info") as mock_info:
            logger.info("MERGE completed", affected_rows=3)
            mock_info.assert_called_once_with("MERGE completed (affected_rows=3)")

    def test_human_readable_warning(self):
        logger = StructuredLogger(structured=False)
        logger.logger.propagate = False
        with patch.object(logger.logger, "warning") as mock_warn:
            logger.warning("watch out")
            mock_warn.assert_called_once_with("[WARN] watch out")

    def test_log_below_level_skipped(self, capsys):
        logger = StructuredLogger(structured=True, level="WARNING")
        logger.info("should not appear")
        assert capsys.readouterr().out == ""


class TestModuleLevelFunctions:
    def test_get_logging_context_returns_logging_context(self):
        assert isinstance(get_logging_context(), LoggingContext)

    def test_get_logging_context_is_shared(self):
        assert get_logging_context() is get_logging_context()

    def test_set_and_get_logging_context_roundtrip(self):
        custom = LoggingContext(logger=StructuredLogger(structured=True), table="orders")
        set_logging_context(custom)
        assert get_logging_context() is custom

    def test_create_logging_context_with_params(self):
        ctx = create_logging_context(table="orders", operation_id="op-1")
        assert ctx.table == "orders"
        assert ctx.operation_id == "op-1"


class TestLoggingContext:
    @pytest.fixture
    def ctx(self):
        logger = StructuredLogger(structured=True, level="DEBUG")
        return LoggingContext(logger=logger, table="orders", operation_id="op-1")

    def test_logger_property_fallback_when_none(self):
        ctx = LoggingContext(logger=None)
        assert hasattr(ctx.logger, "info")

    def test_base_context(self, ctx):
        assert ctx._base_context() == {"table": "orders", "operation_id": "op-1"}
        assert LoggingContext()._base_context() == {}

    def test_with_context_creates_new(self, ctx):
        new_ctx = ctx.with_context(table="customers")
        assert new_ctx.table == "customers"
        assert new_ctx.operation_id == "op-1"
        assert new_ctx is not ctx

    def test_context_manager_logs_exception(self, ctx, capsys):
        with pytest.raises(ValueError):
            with ctx:
                raise ValueError("boom")
        assert "boom" in capsys.readouterr().out

    def test_info_logs_with_context(self, ctx, capsys):
        ctx.info("hello", rows=2)
        parsed = json.loads(capsys.readouterr().out.strip())
        assert parsed["message"] == "hello"
        assert parsed["table"] == "orders"
        assert parsed["rows"] == 2

    def test_operation_success(self, ctx, capsys):
        with ctx.operation(OperationType.LOAD, "#TmpTable") as metrics:
            metrics.rows_in = 100
            metrics.rows_out = 100
        lines = [json.loads(line) for line in capsys.readouterr().out.strip().split("\n")]
        assert lines[0]["message"] == "Starting load: #TmpTable"
        assert lines[-1]["message"] == "Completed load: #TmpTable"
        assert lines[-1]["rows_out"] == 100
        assert "elapsed_ms" in lines[-1]

    def test_operation_failure_logged_and_reraised(self, ctx, capsys):
        with pytest.raises(RuntimeError):
            with ctx.operation(OperationType.MERGE, "[dbo].[orders]"):
                raise RuntimeError("oops")
        lines = [json.loads(line) for line in capsys.readouterr().out.strip().split("\n")]
        assert lines[-1]["level"] == "ERROR"
        assert lines[-1]["error_type"] == "RuntimeError"

    def test_log_connection(self, ctx, capsys):
        ctx.log_connection("sql_server", "SqlServer(host/db)")
        assert "SqlServer(host/db)" in capsys.readouterr().out
