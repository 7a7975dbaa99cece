import json
import logging

import pytest

from converty.utils.logger import SimpleFormatter, StructuredFormatter, correlation_id_var, get_correlation_id


def make_record(**extra):
    record = logging.LogRecord("converty.test", logging.INFO, __file__, 1, "job.submitted", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


@pytest.fixture
def request_scope():
    token = correlation_id_var.set("req-123")
    yield
    correlation_id_var.reset(token)


def test_structured_lines_carry_the_request_correlation_id(request_scope):
    entry = json.loads(StructuredFormatter().format(make_record(job_id="j1")))
    assert entry["correlation_id"] == "req-123"
    assert entry["job_id"] == "j1"
    assert get_correlation_id() == "req-123"


def test_simple_lines_carry_the_request_correlation_id(request_scope):
    line = SimpleFormatter().format(make_record())
    assert line.endswith("[correlation_id=req-123]")


def test_explicit_correlation_id_wins(request_scope):
    entry = json.loads(StructuredFormatter().format(make_record(correlation_id="given")))
    assert entry["correlation_id"] == "given"


def test_no_correlation_id_outside_a_request():
    assert get_correlation_id() == ""
    entry = json.loads(StructuredFormatter().format(make_record()))
    assert "correlation_id" not in entry
