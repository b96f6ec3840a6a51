import logging

from banksyscope.logging_utils import LOGGER_NAME, close_logger, setup_logger


def test_log_files_named_from_io_config(tmp_path):
    logger = setup_logger(str(tmp_path), "DEBUG", {"log_name": "run42", "log_max_mb": 1})
    logger.error("boom")
    close_logger()
    assert "boom" in (tmp_path / "run42.log").read_text(encoding="utf-8")
    assert "boom" in (tmp_path / "run42.error.log").read_text(encoding="utf-8")


def test_repeated_setup_moves_logging_to_new_directory(tmp_path):
    first, second = tmp_path / "a", tmp_path / "b"
    setup_logger(str(first), "INFO")
    logger = setup_logger(str(second), "INFO")
    assert len(logger.handlers) == 3
    logger.info("second run")
    close_logger()
    assert "second run" in (second / "banksyscope.log").read_text(encoding="utf-8")
    assert "second run" not in (first / "banksyscope.log").read_text(encoding="utf-8")


def test_errors_only_in_error_log(tmp_path):
    logger = setup_logger(str(tmp_path), "INFO")
    logger.info("just info")
    logger.error("real problem")
    close_logger()
    err = (tmp_path / "banksyscope.error.log").read_text(encoding="utf-8")
    assert "real problem" in err
    assert "just info" not in err


def test_close_logger_restores_propagation(tmp_path):
    setup_logger(str(tmp_path), "INFO")
    assert logging.getLogger(LOGGER_NAME).propagate is False
    close_logger()
    logger = logging.getLogger(LOGGER_NAME)
    assert logger.handlers == []
    assert logger.propagate is True
