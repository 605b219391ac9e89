import logging

from modelview import log


def test_callback_receives_messages():
    received = []
    log.set_callback(lambda level, msg: received.append((level, msg)))
    try:
        log.info("hello")
        log.warning("careful")
    finally:
        log.set_callback(None)

    assert received == [(logging.INFO, "hello"), (logging.WARNING, "careful")]


def test_exception_includes_context_and_traceback():
    received = []
    log.set_callback(lambda level, msg: received.append((level, msg)))
    try:
        try:
            raise ValueError("boom")
        except ValueError as e:
            log.error(e, "Parsing failed")
    finally:
        log.set_callback(None)

    level, msg = received[0]
    assert level == logging.ERROR
    assert msg.startswith("Parsing failed: ValueError: boom")
    assert "Traceback" in msg


def test_records_reach_package_logger(caplog):
    caplog.set_level(logging.DEBUG, logger="modelview")
    log.debug("routing model.stl")
    assert "routing model.stl" in caplog.text
