"""
Tests for Keyward structured logging
"""

import json
import logging
import threading

from keyward.logging import (
    ConsoleFormatter,
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_current_log_context,
    get_logger,
    log_context,
)


def make_record(msg="hello", level=logging.INFO, **extra_fields):
    record = logging.LogRecord("keyward", level, __file__, 10, msg, (), None)
    if extra_fields:
        record.extra_fields = extra_fields
    return record


class TestLogContext:
    """Tests for LogContext and log_context()"""

    def test_to_dict_skips_empty(self):
        """Test None fields are omitted"""
        assert LogContext(operation="onboard").to_dict() == {"operation": "onboard"}

    def test_merge_prefers_other(self):
        """Test merging contexts"""
        merged = LogContext(operation="offboard", principal="alice").merge(
            LogContext(document="secrets/dev/a.enc.yaml", extra={"attempt": 2})
        )
        assert merged.to_dict() == {
            "operation": "offboard",
            "principal": "alice",
            "document": "secrets/dev/a.enc.yaml",
            "attempt": 2,
        }

    def test_nesting_restores(self):
        """Test nested contexts stack and unwind"""
        with log_context(operation="offboard", principal="alice"):
            with log_context(document="x"):
                ctx = get_current_log_context()
                assert (ctx.operation, ctx.principal, ctx.document) == ("offboard", "alice", "x")
            assert get_current_log_context().document is None
        assert get_current_log_context().operation is None

    def test_thread_local(self):
        """Test worker threads do not see each other's context"""
        seen = {}

        def worker(name):
            with log_context(document=name):
                seen[name] = get_current_log_context().document

        with log_context(operation="reconcile"):
            threads = [threading.Thread(target=worker, args=(f"doc{i}",)) for i in range(3)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
            assert get_current_log_context().document is None

        assert seen == {"doc0": "doc0", "doc1": "doc1", "doc2": "doc2"}


class TestFormatters:
    """Tests for the log formatters"""

    def test_structured(self):
        """Test JSON output carries context and extra fields"""
        with log_context(operation="onboard", principal="alice"):
            line = StructuredFormatter().format(make_record("Added principal", key_fingerprint="ab12"))
        entry = json.loads(line)
        assert entry["level"] == "INFO"
        assert entry["message"] == "Added principal"
        assert entry["context"] == {"operation": "onboard", "principal": "alice"}
        assert entry["key_fingerprint"] == "ab12"
        assert "source" not in entry

    def test_structured_debug_source(self):
        """Test debug records include their source location"""
        entry = json.loads(StructuredFormatter().format(make_record(level=logging.DEBUG)))
        assert entry["source"]["line"] == 10

    def test_console(self):
        """Test console output lists context inline"""
        with log_context(operation="verify", document="secrets/dev/a.enc.yaml"):
            line = ConsoleFormatter(use_colors=False).format(make_record("checking"))
        assert "INFO" in line
        assert line.endswith("checking [op=verify, doc=secrets/dev/a.enc.yaml]")


class TestConfigure:
    """Tests for configure_logging"""

    def test_log_file_gets_json(self, tmp_path):
        """Test a log file receives structured lines"""
        log_file = tmp_path / "keyward.log"
        configure_logging(level="INFO", format="console", log_file=log_file)
        get_logger().warning("Could not record change", paths=["a"])
        for handler in logging.getLogger("keyward").handlers:
            handler.flush()

        entry = json.loads(log_file.read_text().splitlines()[-1])
        assert entry["level"] == "WARNING"
        assert entry["paths"] == ["a"]
        configure_logging(level="ERROR")

    def test_level_filters(self, tmp_path):
        """Test records below the level are dropped"""
        log_file = tmp_path / "keyward.log"
        configure_logging(level="WARNING", log_file=log_file)
        get_logger().info("hidden")
        get_logger().error("shown")
        for handler in logging.getLogger("keyward").handlers:
            handler.flush()
        messages = [json.loads(line)["message"] for line in log_file.read_text().splitlines()]
        assert messages == ["shown"]
        configure_logging(level="ERROR")

    def test_timed(self, tmp_path):
        """Test timed() logs start and completion with a duration"""
        log_file = tmp_path / "keyward.log"
        configure_logging(level="DEBUG", log_file=log_file)
        with get_logger().timed("reconcile"):
            pass
        for handler in logging.getLogger("keyward").handlers:
            handler.flush()
        entries = [json.loads(line) for line in log_file.read_text().splitlines()]
        assert entries[0]["message"] == "Starting: reconcile"
        assert entries[1]["message"] == "Completed: reconcile"
        assert "duration_ms" in entries[1]
        configure_logging(level="ERROR")
