import logging

from shared.utils.logging import setup_logger


def test_loggers_share_namespace():
    logger = setup_logger("decision")
    assert logger.name == "vpa.decision"
    assert setup_logger("vpa.decision") is logger
    assert logging.getLogger("vpa").handlers


def test_explicit_level():
    assert setup_logger("level-check", "debug").level == logging.DEBUG
    assert setup_logger("level-check-int", logging.WARNING).level == logging.WARNING
