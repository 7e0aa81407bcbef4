"""
로깅 시스템 테스트
"""

from tunnel_agent.logger import get_logger, init_logger


def test_log_dir_creates_files(tmp_path):
    logger = init_logger(str(tmp_path / "logs"), "DEBUG")
    logger.info("tunnel up")
    logger.error("tunnel down")

    files = logger.get_log_files()
    with open(files["main_log"], encoding="utf-8") as f:
        main = f.read()
    with open(files["error_log"], encoding="utf-8") as f:
        errors = f.read()
    assert "tunnel up" in main
    assert "tunnel down" in errors
    assert "tunnel up" not in errors
    assert get_logger() is logger


def test_single_log_file(tmp_path):
    path = tmp_path / "server.log"
    logger = init_logger(None, "INFO", log_file=str(path))
    logger.debug("hidden")
    logger.warning("visible")
    content = path.read_text()
    assert "visible" in content
    assert "hidden" not in content
