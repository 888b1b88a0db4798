import os
import sys
import time
import shutil
import secrets
import logging
import threading
import subprocess
from datetime import datetime, timedelta
from urllib.parse import quote

import requests
from werkzeug.utils import secure_filename
from yt_dlp.version import __version__ as YTDLP_MODULE_VERSION

logger = logging.getLogger(__name__)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

DOWNLOAD_FOLDER = os.path.abspath(os.environ.get('DOWNLOAD_FOLDER', os.path.join(BASE_DIR, 'downloads')))
COOKIES_FOLDER = os.path.abspath(os.environ.get('COOKIES_FOLDER', os.path.join(BASE_DIR, 'cookies')))

YTDLP_PATH = os.environ.get('YTDLP_PATH', os.path.join(BASE_DIR, 'yt-dlp'))
YTDLP_DOWNLOAD_URL = os.environ.get(
    'YTDLP_DOWNLOAD_URL',
    'https://github.com/yt-dlp/yt-dlp/releases/latest/download/yt-dlp'
)

# Marker file kept for existing deployments; the env var is the preferred switch
REAL_DOWNLOADS_ENABLED = (
    os.environ.get('ENABLE_REAL_DOWNLOADS', 'false').lower() == 'true'
    or os.path.exists(os.path.join(BASE_DIR, 'ENABLE_REAL_DOWNLOADS'))
)

DOWNLOAD_TIMEOUT = int(os.environ.get('DOWNLOAD_TIMEOUT', 0))  # 0 = no timeout
SOCKET_TIMEOUT = int(os.environ.get('SOCKET_TIMEOUT', 45))
DOWNLOAD_RETRIES = int(os.environ.get('DOWNLOAD_RETRIES', 2))
VIDEO_FORMAT = os.environ.get('VIDEO_FORMAT', 'bv*[height<=?720]+ba/b')

RECENT_FILE_WINDOW = float(os.environ.get('RECENT_FILE_WINDOW', 15))  # seconds
LOCATE_SETTLE_DELAY = float(os.environ.get('LOCATE_SETTLE_DELAY', 0.5))
FILE_RETENTION_HOURS = int(os.environ.get('FILE_RETENTION_HOURS', 24))

# Run the pip-installed yt_dlp package when no standalone binary is found
YTDLP_MODULE_FALLBACK = os.environ.get('YTDLP_MODULE_FALLBACK', 'true').lower() == 'true'

# Characters encodeURIComponent leaves alone
URL_SAFE_CHARS = "!~*'()"

LOG_LINE_LIMIT = 200
LOG_DUMP_LIMIT = 500
READER_JOIN_TIMEOUT = 5  # seconds


class DownloadError(Exception):
    """Raised when the downloader cannot be started or its output cannot be inspected."""


def ensure_directories():
    for folder in (DOWNLOAD_FOLDER, COOKIES_FOLDER):
        if os.path.isdir(folder):
            logger.info(f"Directory already exists: {folder}")
            continue
        try:
            os.makedirs(folder, exist_ok=True)
            logger.info(f"✓ Created directory: {folder}")
        except OSError as e:
            logger.error(f"Failed to create directory {folder}: {e}")


def _now_ms():
    return int(time.time() * 1000)


def _download_url_for(filename):
    return f"/downloads/{quote(filename, safe=URL_SAFE_CHARS)}"


def _title_for(filename):
    return os.path.splitext(filename)[0]


def _make_executable(path):
    os.chmod(path, 0o755)


def ensure_ytdlp():
    """Make sure the yt-dlp binary is present and executable.

    Fetches the latest release with requests when the binary is missing.
    Failures are logged only; get_ytdlp_command() falls back to PATH or the
    installed yt_dlp package.
    """
    if not REAL_DOWNLOADS_ENABLED:
        logger.info("Real downloads not enabled, skipping yt-dlp setup")
        return

    if os.path.exists(YTDLP_PATH):
        logger.info(f"yt-dlp already exists at: {YTDLP_PATH}")
        try:
            _make_executable(YTDLP_PATH)
            logger.info("✓ yt-dlp permissions ensured")
        except OSError as e:
            logger.warning(f"Could not set yt-dlp permissions: {e}")
        return

    logger.info(f"Downloading yt-dlp from {YTDLP_DOWNLOAD_URL}...")
    temp_path = YTDLP_PATH + '.tmp'
    try:
        response = requests.get(YTDLP_DOWNLOAD_URL, stream=True, timeout=120)
        response.raise_for_status()

        with open(temp_path, 'wb') as f:
            for chunk in response.iter_content(chunk_size=8192):
                f.write(chunk)
        os.replace(temp_path, YTDLP_PATH)
        _make_executable(YTDLP_PATH)
        logger.info(f"✓ yt-dlp downloaded and made executable: {YTDLP_PATH}")
    except requests.RequestException as e:
        logger.error(f"Failed to download yt-dlp: {e}")
        logger.warning("Downloads will use yt-dlp from PATH or the installed package if available")
    except OSError as e:
        logger.error(f"Failed to install yt-dlp binary: {e}")
    finally:
        if os.path.exists(temp_path):
            try:
                os.remove(temp_path)
            except OSError as e:
                logger.warning(f"Could not remove partial download {temp_path}: {e}")


def get_ytdlp_command():
    """Return the argv prefix used to run yt-dlp, or None if nothing is available."""
    if os.path.exists(YTDLP_PATH):
        return [YTDLP_PATH]

    on_path = shutil.which('yt-dlp')
    if on_path:
        return [on_path]

    if YTDLP_MODULE_FALLBACK:
        return [sys.executable, '-m', 'yt_dlp']

    return None


def ytdlp_status():
    command = get_ytdlp_command()
    return {
        'available': command is not None,
        'command': command[0] if command else None,
        'moduleVersion': YTDLP_MODULE_VERSION,
    }


def build_download_args(url, output_template, cookie_path=None):
    args = [
        url,
        '--no-check-certificate',
        '--socket-timeout', str(SOCKET_TIMEOUT),
        '--retries', str(DOWNLOAD_RETRIES),
        '--no-progress',
        '-f', VIDEO_FORMAT,
        '-o', output_template,
        '--newline',
    ]
    if cookie_path:
        args += ['--cookies', cookie_path]
    return args


def resolve_cookie_path(cookie_filename):
    """Map a client-supplied cookie name onto a file inside COOKIES_FOLDER."""
    if not cookie_filename:
        return None

    safe_name = secure_filename(os.path.basename(str(cookie_filename)))
    if not safe_name:
        logger.warning(f"Rejected cookie filename: {cookie_filename!r}")
        return None

    cookie_path = os.path.join(COOKIES_FOLDER, safe_name)
    if os.path.isfile(cookie_path):
        return cookie_path

    logger.warning(f"Cookie file not found: {cookie_path}")
    return None


def _file_mtimes(directory, names):
    entries = []
    for name in names:
        path = os.path.join(directory, name)
        try:
            if not os.path.isfile(path):
                continue
            entries.append((name, os.path.getmtime(path)))
        except FileNotFoundError:
            # removed between listdir and stat
            continue
    return entries


def _scan_for_prefix(directory, base_name):
    names = [name for name in os.listdir(directory) if name.startswith(base_name)]
    entries = _file_mtimes(directory, names)
    if not entries:
        return None, None
    if len(entries) == 1:
        return entries[0][0], 'prefix'

    logger.warning(f"⚠️ {len(entries)} files match '{base_name}', picking the newest")
    entries.sort(key=lambda item: item[1], reverse=True)
    return entries[0][0], 'newest_prefix'


def locate_output_file(directory, base_name, recent_window=None, settle_delay=None, now=None):
    """Find the file yt-dlp just wrote for ``base_name``.

    Files whose name starts with ``base_name`` win; if several match, the most
    recently modified one is returned. The directory is rescanned once after
    ``settle_delay`` seconds, since the listing can lag behind the process
    exiting. Failing that, the newest regular file modified within
    ``recent_window`` seconds is taken.

    Returns ``(filename, strategy)`` where strategy is ``'prefix'``,
    ``'newest_prefix'`` or ``'recent'``, or ``(None, None)`` if nothing fits.
    Raises DownloadError if the directory cannot be read.
    """
    if recent_window is None:
        recent_window = RECENT_FILE_WINDOW
    if settle_delay is None:
        settle_delay = LOCATE_SETTLE_DELAY

    try:
        filename, strategy = _scan_for_prefix(directory, base_name)
        if filename is None and settle_delay > 0:
            time.sleep(settle_delay)
            filename, strategy = _scan_for_prefix(directory, base_name)
        if filename is not None:
            return filename, strategy

        names = os.listdir(directory)
    except OSError as e:
        raise DownloadError(f"Could not read downloads directory: {e}") from e

    logger.error(f"No file matching '{base_name}*' in {directory}; files present: {names}")

    current = time.time() if now is None else now
    recent = [
        (name, mtime) for name, mtime in _file_mtimes(directory, names)
        if current - mtime < recent_window
    ]
    if not recent:
        return None, None

    recent.sort(key=lambda item: item[1], reverse=True)
    logger.warning(f"Fallback picked recently modified file: {recent[0][0]}")
    return recent[0][0], 'recent'


def write_note(prefix, content, title, **extra):
    """Write a diagnostic text file into the downloads folder and describe it as a result."""
    filename = f"{prefix}_{_now_ms()}_{secrets.token_hex(3)}.txt"
    with open(os.path.join(DOWNLOAD_FOLDER, filename), 'w', encoding='utf-8') as f:
        f.write(content)

    result = {
        'success': True,
        'title': title,
        'downloadUrl': _download_url_for(filename),
        'filename': filename,
    }
    result.update(extra)
    return result


def _pump(stream, label, sink):
    for line in stream:
        sink.append(line)
        line = line.strip()
        if line:
            logger.info(f"[yt-dlp {label}]: {line[:LOG_LINE_LIMIT]}")
    stream.close()


def run_ytdlp(cmd, timeout=None):
    """Run yt-dlp, logging each output line as it arrives.

    Output is decoded as UTF-8 with undecodable bytes replaced. A process
    still running after ``timeout`` seconds is killed.
    Returns ``(returncode, stdout, stderr, timed_out)``; OSError from the
    spawn propagates.
    """
    process = subprocess.Popen(
        cmd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding='utf-8',
        errors='replace',
        bufsize=1,
    )

    stdout_lines = []
    stderr_lines = []
    readers = [
        threading.Thread(target=_pump, args=(process.stdout, 'OUT', stdout_lines), daemon=True),
        threading.Thread(target=_pump, args=(process.stderr, 'ERR', stderr_lines), daemon=True),
    ]
    for reader in readers:
        reader.start()

    timed_out = False
    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        process.kill()
        process.wait()

    # grandchildren (ffmpeg) can hold the pipes open after a kill
    for reader in readers:
        reader.join(timeout=READER_JOIN_TIMEOUT)

    return process.returncode, ''.join(stdout_lines), ''.join(stderr_lines), timed_out


def _dump_output(stdout, stderr):
    logger.error("--- yt-dlp STDOUT ---")
    logger.error(stdout[:LOG_DUMP_LIMIT])
    logger.error("--- yt-dlp STDERR ---")
    logger.error(stderr[:LOG_DUMP_LIMIT])


def _output_section(stdout, stderr):
    return f"--- Output ---\nSTDOUT:\n{stdout}\nSTDERR:\n{stderr}"


def simulate_download(url):
    logger.info("Real downloads not enabled, simulating")
    content = (
        f"Download Simulation\n"
        f"URL: {url}\n"
        f"Timestamp: {datetime.now().isoformat()}\n"
        f"Real downloads are disabled."
    )
    return write_note('simulation', content, 'Simulation File', simulated=True)


def _check_executable(command):
    """Returns a note result when the binary cannot be made executable, else None."""
    binary = command[0]
    if binary == sys.executable or os.access(binary, os.X_OK):
        return None

    logger.info("yt-dlp not executable, attempting fix...")
    try:
        _make_executable(binary)
        logger.info("✓ yt-dlp permissions fixed")
        return None
    except OSError as e:
        message = f"Failed to make yt-dlp executable: {e}"
        logger.error(message)
        return write_note('error_permissions', message, 'Permissions Error', error=True)


def download_video(url, cookie_filename=None):
    """Fetch ``url`` with yt-dlp into DOWNLOAD_FOLDER and describe the resulting file.

    Problems after the process has started are reported as note files with
    ``error: True``; only a failure to start the process raises DownloadError.
    """
    if not REAL_DOWNLOADS_ENABLED:
        return simulate_download(url)

    command = get_ytdlp_command()
    if command is None:
        message = 'yt-dlp executable not found. Cannot proceed with download.'
        logger.error(message)
        return write_note('error_noytdlp', message, 'yt-dlp Missing', error=True)

    permission_problem = _check_executable(command)
    if permission_problem:
        return permission_problem

    base_name = f"video_{_now_ms()}_{secrets.token_hex(3)}"
    output_template = os.path.join(DOWNLOAD_FOLDER, f"{base_name}.%(ext)s")

    cookie_path = resolve_cookie_path(cookie_filename)
    if cookie_path:
        logger.info("Using cookies for authentication")

    cmd = command + build_download_args(url, output_template, cookie_path)
    logger.info(f"Starting real download for: {url}")
    logger.info(f"Output template: {output_template}")

    timeout = DOWNLOAD_TIMEOUT if DOWNLOAD_TIMEOUT > 0 else None
    try:
        returncode, stdout, stderr, timed_out = run_ytdlp(cmd, timeout=timeout)
    except OSError as e:
        logger.error(f"Failed to start yt-dlp: {e}")
        write_note('error_spawn', f"Failed to start yt-dlp: {e}\nURL: {url}", 'Spawn Error', error=True)
        raise DownloadError(f"Failed to start yt-dlp: {e}") from e

    if timed_out:
        logger.error(f"yt-dlp timed out after {DOWNLOAD_TIMEOUT}s for {url}")
        _dump_output(stdout, stderr)
        content = (
            f"Download timed out after {DOWNLOAD_TIMEOUT} seconds.\n"
            f"URL: {url}\n"
            f"Time: {datetime.now().isoformat()}\n"
            f"{_output_section(stdout, stderr)}"
        )
        return write_note('error_timeout', content, 'Download Timed Out', error=True)

    logger.info(f"yt-dlp process exited with code {returncode}")

    if returncode != 0:
        logger.error(f"yt-dlp failed with exit code {returncode}")
        _dump_output(stdout, stderr)
        content = (
            f"Download failed!\n"
            f"URL: {url}\n"
            f"Exit Code: {returncode}\n"
            f"Time: {datetime.now().isoformat()}\n"
            f"{_output_section(stdout, stderr)}"
        )
        return write_note(f"error_failed_{returncode}", content, 'Download Failed', error=True)

    logger.info("✓ yt-dlp reported success. Searching for file...")
    filename, strategy = locate_output_file(DOWNLOAD_FOLDER, base_name)

    if filename is None:
        logger.error(f"yt-dlp exited 0 but no file '{base_name}*' was found")
        _dump_output(stdout, stderr)
        content = (
            f"Download process reported success, but the file could not be located.\n"
            f"Expected base: {base_name}\n"
            f"URL: {url}\n"
            f"Time: {datetime.now().isoformat()}\n"
            f"{_output_section(stdout, stderr)}"
        )
        return write_note('error_notfound', content, 'File Not Found', error=True)

    logger.info(f"✓ Located file ({strategy}): {filename}")
    return {
        'success': True,
        'title': _title_for(filename),
        'downloadUrl': _download_url_for(filename),
        'filename': filename,
    }


def list_downloads():
    try:
        return sorted(os.listdir(DOWNLOAD_FOLDER))
    except OSError as e:
        raise DownloadError(f"Could not read downloads directory: {e}") from e


def save_cookie_upload(content):
    """Store uploaded cookie bytes as cookies_<ms>_<hex>.txt and return the new filename."""
    os.makedirs(COOKIES_FOLDER, exist_ok=True)
    filename = f"cookies_{_now_ms()}_{secrets.token_hex(3)}.txt"
    cookie_path = os.path.join(COOKIES_FOLDER, filename)

    temp_path = cookie_path + '.tmp'
    with open(temp_path, 'wb') as f:
        f.write(content)
    os.replace(temp_path, cookie_path)
    return filename


def validate_cookie_file(cookie_path):
    """
    Parse a Netscape cookies.txt file and report on its health.
    Returns: (is_valid, message, health_dict)
    """
    health = {
        'cookie_count': 0,
        'expired_count': 0,
        'malformed_lines': 0,
        'domains': [],
    }
    current_time = int(time.time())

    try:
        with open(cookie_path, 'r', encoding='utf-8', errors='replace') as f:
            lines = f.readlines()
    except OSError as e:
        return False, f"Error reading cookies: {e}", health

    domains = set()
    for line in lines:
        line = line.strip()
        if line.startswith('#HttpOnly_'):
            line = line[len('#HttpOnly_'):]
        elif not line or line.startswith('#'):
            continue

        parts = line.split('\t')
        if len(parts) < 7:
            health['malformed_lines'] += 1
            continue

        health['cookie_count'] += 1
        domains.add(parts[0].lstrip('.').lower())

        try:
            expiry = int(parts[4])
        except ValueError:
            health['malformed_lines'] += 1
            continue
        if 0 < expiry < current_time:
            health['expired_count'] += 1

    health['domains'] = sorted(domains)

    if health['cookie_count'] == 0:
        return False, "No valid cookie lines found", health
    if health['expired_count'] > 0:
        return True, f"Found {health['cookie_count']} cookies ({health['expired_count']} expired).", health
    return True, f"Found {health['cookie_count']} cookies for {len(domains)} domain(s).", health


def cleanup_old_files(retention_hours=None):
    """Delete downloads and cookie files older than the retention window. Returns the count."""
    if retention_hours is None:
        retention_hours = FILE_RETENTION_HOURS
    cutoff = datetime.now() - timedelta(hours=retention_hours)
    deleted_count = 0

    for folder in (DOWNLOAD_FOLDER, COOKIES_FOLDER):
        if not os.path.isdir(folder):
            continue
        for filename in os.listdir(folder):
            file_path = os.path.join(folder, filename)
            try:
                if not os.path.isfile(file_path):
                    continue
                if datetime.fromtimestamp(os.path.getmtime(file_path)) < cutoff:
                    os.remove(file_path)
                    deleted_count += 1
            except OSError as e:
                logger.error(f"Error removing old file {filename}: {e}")

    if deleted_count > 0:
        logger.info(f"Cleanup completed: Deleted {deleted_count} old files")
    return deleted_count
