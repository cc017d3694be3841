# relgate/tests/test_logging.py
import io
import json
import logging

from relgate.logging import (
    JSONFormatter,
    bind,
    configure_json_logging,
    context,
    get_logger,
    log_decision,
    reset,
    unbind,
)


def _capture():
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())
    logger = logging.getLogger("relgate.tests.logging")
    logger.handlers = [handler]
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    return logger, stream


def test_bind_unbind_reset():
    reset()
    bind(policy_id="p1", skipped=None)
    assert context() == {"policy_id": "p1"}
    unbind("policy_id")
    assert context() == {}
    bind(a=1)
    reset()
    assert context() == {}


def test_decision_envelope():
    logger, stream = _capture()
    reset()
    bind(policy_id="policy_id1")
    try:
        log_decision(
            logger,
            verdict=False,
            error_kind="verification",
            message="release rejected",
            extra={"releaser_id": "releaser_id2", "reason": "env", "name": "clash"},
        )
    finally:
        reset()

    evt = json.loads(stream.getvalue())
    assert evt["schema"] == "relgate.log.v1"
    assert evt["msg"] == "release rejected"
    assert evt["verdict"] is False
    assert evt["error_kind"] == "verification"
    assert evt["policy_id"] == "policy_id1"
    assert evt["releaser_id"] == "releaser_id2"
    assert evt["meta"] == {"reason": "env", "x_name": "clash"}


def test_exception_info():
    logger, stream = _capture()
    try:
        raise ValueError("boom")
    except ValueError:
        logger.exception("failed")
    evt = json.loads(stream.getvalue())
    assert evt["lvl"] == "ERROR"
    assert evt["exc_type"] == "ValueError"
    assert "boom" in evt["stack"]


def test_configure_json_logging_writes_to_stream():
    root = logging.getLogger()
    saved = (list(root.handlers), root.level)
    stream = io.StringIO()
    try:
        configure_json_logging("debug", stream=stream)
        logging.getLogger("relgate.tests.root").debug("hello", extra={"policy_id": "p"})
        assert get_logger("relgate.tests.other").name == "relgate.tests.other"
    finally:
        root.handlers = saved[0]
        root.setLevel(saved[1])
    evt = json.loads(stream.getvalue().splitlines()[0])
    assert evt["lvl"] == "DEBUG"
    assert evt["policy_id"] == "p"
