import logging

from core.logger import cleanup_old_logs, setup_logging


def test_cleanup_keeps_newest(tmp_path):
    for stamp in ('20260101-000000', '20260102-000000', '20260103-000000'):
        (tmp_path / f'crashguard-{stamp}.log').write_text('x')
    (tmp_path / 'other.log').write_text('keep')

    cleanup_old_logs(tmp_path, 1)

    assert sorted(p.name for p in tmp_path.iterdir()) == ['crashguard-20260103-000000.log', 'other.log']


def test_setup_logging_writes_file(tmp_path):
    root = logging.getLogger()
    before = list(root.handlers)
    try:
        log_file = setup_logging(str(tmp_path / 'logs'), max_log_files=2)
        logging.getLogger('crashguard.test').info("[LOCK] hello")
        for handler in root.handlers:
            handler.flush()

        assert log_file.parent == tmp_path / 'logs'
        assert log_file.name.startswith('crashguard-')
        assert "INFO - [LOCK] hello" in log_file.read_text()
    finally:
        for handler in list(root.handlers):
            if handler not in before:
                root.removeHandler(handler)
                handler.close()
