"""
Structured logging tests.
"""

import logging

from autocorrector.util.logging import get_logger, sanitize_details, truncate_text


def records(caplog, name):
    return [r for r in caplog.records if r.name == name]


class TestStructuredLogger:
    def test_operation_format(self, caplog):
        logger = get_logger("autocorrector.test.format")
        with caplog.at_level(logging.INFO, logger="autocorrector.test.format"):
            logger.log_run_transition(4, "auditing", {"cycle": 1})

        [record] = records(caplog, "autocorrector.test.format")
        assert record.levelno == logging.INFO
        assert record.getMessage() == "Operation: run.transition, Status: auditing, Details: {'run_id': 4, 'cycle': 1}"

    def test_error_cycles_log_as_warnings(self, caplog):
        logger = get_logger("autocorrector.test.cycles")
        with caplog.at_level(logging.INFO, logger="autocorrector.test.cycles"):
            logger.log_cycle_result(4, 1, "corrected", {"score": 72.0})
            logger.log_cycle_result(4, 2, "error")

        levels = [r.levelno for r in records(caplog, "autocorrector.test.cycles")]
        assert levels == [logging.INFO, logging.WARNING]

    def test_external_call_failure_is_an_error(self, caplog):
        logger = get_logger("autocorrector.test.external")
        with caplog.at_level(logging.INFO, logger="autocorrector.test.external"):
            logger.log_external_call_failure("ollama", RuntimeError("x" * 500))

        [record] = records(caplog, "autocorrector.test.external")
        assert record.levelno == logging.ERROR
        assert "Status: failed" in record.getMessage()
        assert "x" * 200 not in record.getMessage()

    def test_malformed_batch_is_a_warning(self, caplog):
        logger = get_logger("autocorrector.test.audit")
        with caplog.at_level(logging.INFO, logger="autocorrector.test.audit"):
            logger.log_audit_batch(2, 3, "malformed", {"error": "no JSON object"})

        [record] = records(caplog, "autocorrector.test.audit")
        assert record.levelno == logging.WARNING
        assert "'batch': '2/3'" in record.getMessage()

    def test_handler_added_once(self):
        first = get_logger("autocorrector.test.handlers")
        second = get_logger("autocorrector.test.handlers")
        assert first.logger is second.logger
        assert len(second.logger.handlers) == 1


class TestSanitizeDetails:
    def test_redacts_text_fields(self):
        details = sanitize_details({"content": "the whole chapter", "correctedText": "new chapter", "chapter": 3})
        assert details == {"content": "[REDACTED]", "correctedText": "[REDACTED]", "chapter": 3}

    def test_truncates_long_strings(self):
        details = sanitize_details({"reason": "r" * 300}, limit=50)
        assert len(details["reason"]) == 50
        assert details["reason"].endswith("...")

    def test_custom_redaction_list(self):
        assert sanitize_details({"text": "kept", "secret": "s"}, redact=["secret"]) == {"text": "kept", "secret": "[REDACTED]"}


def test_truncate_text():
    assert truncate_text(None) == ""
    assert truncate_text("short") == "short"
    assert truncate_text("abcdefghij", limit=8) == "abcde..."
