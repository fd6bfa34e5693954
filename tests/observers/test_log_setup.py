import logging
from pathlib import Path

from kubestrap.logging.log import init_logging


def test_init_logging_writes_run_file(tmp_path: Path):
    logger, run_id, log_path = init_logging(base_dir=tmp_path, name="kubestrap-logtest")
    try:
        logger.debug("debug goes to the file only")
        for h in logger.handlers:
            h.flush()

        assert log_path.parent == tmp_path
        assert run_id in log_path.name
        text = log_path.read_text()
        assert f"run_id={run_id}" in text
        assert "debug goes to the file only" in text

        console = [h for h in logger.handlers if not isinstance(h, logging.FileHandler)]
        assert console[0].level == logging.INFO
    finally:
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()


def test_init_logging_replaces_handlers(tmp_path: Path):
    init_logging(base_dir=tmp_path, name="kubestrap-logtest2")
    logger, _, _ = init_logging(base_dir=tmp_path, name="kubestrap-logtest2", verbose=True)
    try:
        assert len(logger.handlers) == 2
        console = [h for h in logger.handlers if not isinstance(h, logging.FileHandler)]
        assert console[0].level == logging.DEBUG
    finally:
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()
