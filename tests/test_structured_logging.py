import json

from common.structured_logging import get_logger, set_request_context


def test_get_logger_json_formatting(capsys):
    logger = get_logger("test_logger_format")
    logger.info("hello world", extra={"book_id": "b1"})
    captured = capsys.readouterr()
    output = captured.out.strip()
    data = json.loads(output)
    assert data["event"] == "hello world"
    assert data["level"] == "INFO"
    assert data["logger"] == "test_logger_format"
    assert data["book_id"] == "b1"


def test_request_context_is_attached(capsys):
    logger = get_logger("test_logger_context")
    request_id = set_request_context(user_id="reader-7")
    logger.warning("toggled")
    data = json.loads(capsys.readouterr().out.strip())
    assert data["request_id"] == request_id
    assert data["user_id"] == "reader-7"


def test_log_performance_emits_start_and_complete(capsys):
    logger = get_logger("test_logger_perf")
    with logger.log_performance("hydrate_book", book_id="b1"):
        pass
    lines = [json.loads(line) for line in capsys.readouterr().out.strip().splitlines()]
    assert [line["phase"] for line in lines] == ["start", "complete"]
    assert lines[-1]["status"] == "success"
    assert lines[-1]["book_id"] == "b1"
