import os
import sys
import json
import tempfile

import pytest

# Keep import-time directory bootstrap out of the project tree
_SESSION_DIR = tempfile.mkdtemp(prefix='media-fetch-tests-')
os.environ.setdefault('DOWNLOAD_FOLDER', os.path.join(_SESSION_DIR, 'downloads'))
os.environ.setdefault('COOKIES_FOLDER', os.path.join(_SESSION_DIR, 'cookies'))
os.environ.setdefault('BATCH_STATUS_FILE', os.path.join(_SESSION_DIR, 'batch_status.json'))
os.environ['ENABLE_REAL_DOWNLOADS'] = 'false'
os.environ['BACKGROUND_TASKS_ENABLED'] = 'false'

import app as app_module  # noqa: E402
import downloader  # noqa: E402

# Stand-in for the yt-dlp executable. Output strings are written as latin-1 so
# tests can emit arbitrary bytes.
FAKE_YTDLP_SCRIPT = r'''
import json
import os
import sys
import time

config = json.loads(os.environ['FAKE_YTDLP_CONFIG'])
args = sys.argv[1:]
with open(config['argv_log'], 'a') as f:
    f.write(json.dumps(args) + '\n')

sys.stdout.buffer.write(config['stdout'].encode('latin-1'))
sys.stdout.buffer.flush()
sys.stderr.buffer.write(config['stderr'].encode('latin-1'))
sys.stderr.buffer.flush()

if config['wait_for']:
    deadline = time.time() + 10
    while not os.path.exists(config['wait_for']) and time.time() < deadline:
        time.sleep(0.05)
    if not os.path.exists(config['wait_for']):
        sys.exit(3)

if config['ext']:
    template = args[args.index('-o') + 1]
    with open(template.replace('%(ext)s', config['ext']), 'wb') as f:
        f.write(b'media')

time.sleep(config['hang'])
sys.exit(config['returncode'])
'''


@pytest.fixture
def folders(tmp_path, monkeypatch):
    downloads = tmp_path / 'downloads'
    cookies = tmp_path / 'cookies'
    downloads.mkdir()
    cookies.mkdir()
    monkeypatch.setattr(downloader, 'DOWNLOAD_FOLDER', str(downloads))
    monkeypatch.setattr(downloader, 'COOKIES_FOLDER', str(cookies))
    monkeypatch.setattr(downloader, 'REAL_DOWNLOADS_ENABLED', False)
    monkeypatch.setattr(downloader, 'LOCATE_SETTLE_DELAY', 0)
    monkeypatch.setattr(app_module, 'BATCH_STATUS_FILE', str(tmp_path / 'batch_status.json'))
    monkeypatch.setattr(app_module, 'BATCH_ITEM_DELAY', 0)
    return downloads, cookies


@pytest.fixture
def client(folders):
    app_module.app.config['TESTING'] = True
    with app_module.app.test_client() as test_client:
        yield test_client


@pytest.fixture
def real_mode(folders, monkeypatch):
    """Enable real downloads with yt-dlp resolved to the module fallback."""
    monkeypatch.setattr(downloader, 'REAL_DOWNLOADS_ENABLED', True)
    monkeypatch.setattr(downloader, 'get_ytdlp_command', lambda: [sys.executable, '-m', 'yt_dlp'])
    return folders


@pytest.fixture
def fake_ytdlp(real_mode, tmp_path, monkeypatch):
    """Point downloads at a script that behaves like yt-dlp.

    Attributes on the returned object control the next run: ``returncode``,
    ``ext`` (None writes no media file), ``stdout``, ``stderr``, ``hang``
    (seconds to sleep before exiting) and ``wait_for`` (a path the script
    waits to appear before finishing). ``calls`` lists the argv each run got.
    """
    script = tmp_path / 'fake_ytdlp.py'
    script.write_text(FAKE_YTDLP_SCRIPT)
    argv_log = tmp_path / 'fake_ytdlp_argv.jsonl'

    class FakeYtDlp:
        returncode = 0
        ext = 'mp4'
        stdout = '[download] Destination: video.mp4\n'
        stderr = ''
        hang = 0
        wait_for = None

        def command(self):
            monkeypatch.setenv('FAKE_YTDLP_CONFIG', json.dumps({
                'argv_log': str(argv_log),
                'returncode': self.returncode,
                'ext': self.ext,
                'stdout': self.stdout,
                'stderr': self.stderr,
                'hang': self.hang,
                'wait_for': self.wait_for,
            }))
            return [sys.executable, str(script)]

        @property
        def calls(self):
            if not argv_log.exists():
                return []
            return [json.loads(line) for line in argv_log.read_text().splitlines()]

    fake = FakeYtDlp()
    monkeypatch.setattr(downloader, 'get_ytdlp_command', fake.command)
    return fake
