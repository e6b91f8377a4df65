import itertools
import logging

import pytest

from tierstore.logbuffer import LogBuffer

_counter = itertools.count()


@pytest.fixture
def make_logger():
    created = []

    def make(buffer):
        logger = logging.getLogger(f"tierstore-test.{next(_counter)}")
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        logger.addHandler(buffer)
        created.append((logger, buffer))
        return logger

    yield make
    for logger, buffer in created:
        logger.removeHandler(buffer)


def test_ring_keeps_latest_in_order(make_logger):
    buf = LogBuffer(3)
    log = make_logger(buf)
    for i in range(5):
        log.info("m%d", i)
    assert [e.message for e in buf.entries()] == ["m2", "m3", "m4"]


def test_partial_buffer_in_order(make_logger):
    buf = LogBuffer(10)
    log = make_logger(buf)
    log.info("first")
    log.info("second")
    assert [e.message for e in buf.entries()] == ["first", "second"]


def test_level_filter(make_logger):
    buf = LogBuffer(10)
    log = make_logger(buf)
    log.info("hello")
    log.warning("careful")
    warned = buf.entries(level="warn")
    assert [e.message for e in warned] == ["careful"]
    assert [e.level for e in buf.entries(level="info")] == ["info"]


def test_tail(make_logger):
    buf = LogBuffer(10)
    log = make_logger(buf)
    for i in range(6):
        log.info("n%d", i)
    assert [e.message for e in buf.entries(tail=2)] == ["n4", "n5"]
    assert len(buf.entries(tail=0)) == 6
    assert len(buf.entries(tail=100)) == 6


def test_fields_and_logger_name(make_logger):
    buf = LogBuffer(4)
    log = make_logger(buf)
    log.info("copying file", extra={"rel_path": "a.mp4", "worker": 2})
    (entry,) = buf.entries()
    assert entry.fields == {"rel_path": "a.mp4", "worker": str(2)}
    assert entry.logger == log.name


def test_to_dict_omits_empty_fields(make_logger):
    buf = LogBuffer(4)
    log = make_logger(buf)
    log.error("boom")
    log.error("boom", extra={"tier": "tier0"})
    plain, with_fields = buf.entries()
    assert set(plain.to_dict()) == {"ts", "level", "logger", "msg"}
    assert with_fields.to_dict()["fields"] == {"tier": "tier0"}
    assert plain.to_dict()["msg"] == "boom"


def test_handler_level_threshold(make_logger):
    buf = LogBuffer(4, level=logging.WARNING)
    log = make_logger(buf)
    log.debug("hidden")
    log.warning("shown")
    assert [e.message for e in buf.entries()] == ["shown"]


def test_zero_capacity_rejected():
    with pytest.raises(ValueError):
        LogBuffer(0)