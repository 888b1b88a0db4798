import os
import sys
import time
import json
import signal
import hashlib
import logging
import threading
from datetime import datetime, timedelta
from urllib.parse import urlparse

from flask import Flask, render_template, request, jsonify, send_from_directory
from werkzeug.exceptions import HTTPException

import downloader

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config['MAX_CONTENT_LENGTH'] = 10 * 1024 * 1024  # 10MB request bodies

PORT = int(os.environ.get('PORT', 10000))
BATCH_STATUS_FILE = os.environ.get('BATCH_STATUS_FILE', '/tmp/batch_status.json')
BATCH_MAX_URLS = int(os.environ.get('BATCH_MAX_URLS', 50))
BATCH_ITEM_DELAY = float(os.environ.get('BATCH_ITEM_DELAY', 2))  # seconds between batch items
MAX_COOKIE_FILE_SIZE = 5 * 1024 * 1024  # 5MB limit
CLEANUP_INTERVAL = int(os.environ.get('CLEANUP_INTERVAL', 1800))
# Also covers WSGI servers, which never run the __main__ block
BACKGROUND_TASKS_ENABLED = os.environ.get('BACKGROUND_TASKS_ENABLED', 'true').lower() == 'true'

MEDIA_CONTENT_TYPES = {
    '.mp4': 'video/mp4',
    '.webm': 'video/webm',
    '.mkv': 'video/x-matroska',
}

PLATFORMS = [
    {'name': 'YouTube', 'key': 'youtube', 'icon': '📺'},
    {'name': 'Instagram', 'key': 'instagram', 'icon': '📱'},
    {'name': 'TikTok', 'key': 'tiktok', 'icon': '🎵'},
    {'name': 'Twitter/X', 'key': 'twitter', 'icon': '🐦'},
    {'name': 'Generic', 'key': 'generic', 'icon': '🔗'},
]

downloader.ensure_directories()
logger.info(f"Downloads directory set to: {downloader.DOWNLOAD_FOLDER}")
logger.info(f"Cookies directory set to: {downloader.COOKIES_FOLDER}")
logger.info(f"Real downloads enabled: {downloader.REAL_DOWNLOADS_ENABLED}")


@app.after_request
def add_cache_control_headers(response):
    if response.content_type and 'text/html' in response.content_type:
        response.headers['Cache-Control'] = 'no-cache, no-store, must-revalidate'
        response.headers['Pragma'] = 'no-cache'
        response.headers['Expires'] = '0'
    return response


def is_valid_url(url):
    if not isinstance(url, str):
        return False
    parsed = urlparse(url.strip())
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def shorten(text, limit=100):
    return text if len(text) <= limit else f"{text[:limit]}..."


def request_payload():
    """JSON body if present, otherwise form fields."""
    payload = request.get_json(silent=True)
    if isinstance(payload, dict):
        return payload
    return request.form.to_dict()


# Batch status storage
batch_status_lock = threading.RLock()


def get_batch_status():
    with batch_status_lock:
        if os.path.exists(BATCH_STATUS_FILE):
            try:
                with open(BATCH_STATUS_FILE, 'r') as f:
                    return json.load(f)
            except json.JSONDecodeError:
                return {}
        return {}


def save_batch_status(status_data):
    with batch_status_lock:
        temp_file = BATCH_STATUS_FILE + '.tmp'
        with open(temp_file, 'w') as f:
            json.dump(status_data, f)
        os.replace(temp_file, BATCH_STATUS_FILE)


def update_batch_status(batch_id, updates):
    with batch_status_lock:
        status = get_batch_status()
        if batch_id not in status:
            status[batch_id] = {}
        status[batch_id].update(updates)
        status[batch_id]['updated_at'] = datetime.now().isoformat()
        save_batch_status(status)


def update_batch_item(batch_id, index, updates):
    with batch_status_lock:
        status = get_batch_status()
        items = status.get(batch_id, {}).get('items', [])
        if index >= len(items):
            logger.warning(f"Batch {batch_id} has no item {index}")
            return
        items[index].update(updates)
        status[batch_id]['updated_at'] = datetime.now().isoformat()
        save_batch_status(status)


def prune_batch_status(retention_hours=None):
    """Drop finished batches older than the file retention window."""
    if retention_hours is None:
        retention_hours = downloader.FILE_RETENTION_HOURS
    cutoff = datetime.now() - timedelta(hours=retention_hours)

    with batch_status_lock:
        status = get_batch_status()
        expired = []
        for batch_id, data in status.items():
            try:
                accepted_at = datetime.fromisoformat(data.get('accepted_at', ''))
            except ValueError:
                expired.append(batch_id)
                continue
            if accepted_at < cutoff and data.get('status') != 'processing':
                expired.append(batch_id)

        for batch_id in expired:
            del status[batch_id]
        if expired:
            save_batch_status(status)
    return len(expired)


def generate_batch_id(urls):
    timestamp = str(int(time.time() * 1000))
    combined = f"{'|'.join(urls)}_{timestamp}"
    return hashlib.md5(combined.encode()).hexdigest()[:16]


def process_batch(batch_id, urls, cookie_file=None):
    """Background worker: download each URL in turn, recording per-item outcomes."""
    total = len(urls)
    logger.info(f"Background task: starting batch {batch_id} for {total} URLs")
    update_batch_status(batch_id, {'status': 'processing'})

    completed_count = 0
    failed_count = 0

    for index, url in enumerate(urls):
        prefix = f"[Item {index + 1}/{total}]"
        update_batch_item(batch_id, index, {'status': 'processing'})
        logger.info(f"{prefix} Starting download for: {shorten(str(url))}")

        try:
            if not is_valid_url(url):
                raise ValueError(f"Invalid URL: {url!r}")
            result = downloader.download_video(url.strip(), cookie_file)
            logger.info(f"{prefix} ✓ Completed: {result.get('title')} ({result.get('filename')})")
            update_batch_item(batch_id, index, {'status': 'completed', 'result': result})
            completed_count += 1
        except Exception as e:
            logger.error(f"{prefix} Failed: {url} - {e}")
            update_batch_item(batch_id, index, {'status': 'failed', 'error': str(e)})
            failed_count += 1

        update_batch_status(batch_id, {
            'completed_count': completed_count,
            'failed_count': failed_count,
        })

        if index < total - 1 and BATCH_ITEM_DELAY > 0:
            logger.info(f"{prefix} Waiting {BATCH_ITEM_DELAY:g} seconds before next download...")
            time.sleep(BATCH_ITEM_DELAY)

    update_batch_status(batch_id, {
        'status': 'finished',
        'finished_at': datetime.now().isoformat(),
    })

    logger.info(f"Batch {batch_id} finished: {completed_count} completed, {failed_count} failed")
    for item in get_batch_status().get(batch_id, {}).get('items', []):
        if item.get('status') == 'completed':
            result = item.get('result', {})
            logger.info(f"   Item {item['index'] + 1}: ✓ {result.get('title') or result.get('filename')}")
        else:
            logger.info(f"   Item {item['index'] + 1}: ✗ {item['url']} - {item.get('error')}")


def start_batch_job(batch_id, urls, cookie_file=None):
    thread = threading.Thread(target=process_batch, args=(batch_id, urls, cookie_file))
    thread.daemon = True
    thread.start()
    return thread


# --- Routes ---

@app.route('/')
def index():
    return render_template('index.html', platforms=PLATFORMS,
                           real_downloads=downloader.REAL_DOWNLOADS_ENABLED)


@app.route('/batch.html')
def batch_page():
    return render_template('batch.html', max_urls=BATCH_MAX_URLS)


@app.route('/health')
def health():
    return jsonify({
        'status': 'OK',
        'timestamp': datetime.now().isoformat(),
        'realDownloads': downloader.REAL_DOWNLOADS_ENABLED,
        'downloadsDir': downloader.DOWNLOAD_FOLDER,
        'cookiesDir': downloader.COOKIES_FOLDER,
        'ytDlp': downloader.ytdlp_status(),
    })


@app.route('/api/downloads')
def list_downloads():
    try:
        files = downloader.list_downloads()
    except downloader.DownloadError as e:
        logger.error(f"Error reading downloads dir: {e}")
        return jsonify({'error': 'Could not read downloads directory', 'details': str(e)}), 500
    return jsonify({
        'success': True,
        'files': files,
        'count': len(files),
        'downloadsDir': downloader.DOWNLOAD_FOLDER,
    })


@app.route('/api/platforms')
def platforms():
    return jsonify({'platforms': PLATFORMS})


@app.route('/api/upload-cookie', methods=['POST'])
def upload_cookie():
    upload = request.files.get('cookieFile')
    if upload is None or upload.filename == '':
        return jsonify({'error': 'No cookie file uploaded'}), 400

    content = upload.read(MAX_COOKIE_FILE_SIZE + 1)
    if len(content) > MAX_COOKIE_FILE_SIZE:
        return jsonify({'error': f'Cookie file too large (max {MAX_COOKIE_FILE_SIZE // (1024 * 1024)}MB)'}), 413
    if not content:
        return jsonify({'error': 'Uploaded cookie file is empty'}), 400

    logger.info(f"Cookie file uploaded: {upload.filename}")
    try:
        filename = downloader.save_cookie_upload(content)
    except OSError as e:
        logger.error(f"Error storing cookie file: {e}")
        return jsonify({'error': 'Failed to process cookie file'}), 500

    cookie_path = os.path.join(downloader.COOKIES_FOLDER, filename)
    is_valid, message, health_info = downloader.validate_cookie_file(cookie_path)
    if not is_valid:
        logger.warning(f"Uploaded cookie file looks unusable: {message}")

    return jsonify({
        'success': True,
        'message': 'Cookie file uploaded',
        'filename': filename,
        'path': cookie_path,
        'validation': {
            'valid': is_valid,
            'message': message,
            'cookieCount': health_info['cookie_count'],
            'expiredCount': health_info['expired_count'],
        },
    })


@app.route('/api/download', methods=['POST'])
def download():
    payload = request_payload()
    url = payload.get('url')
    if not url:
        return jsonify({'error': 'URL is required'}), 400
    if not is_valid_url(url):
        return jsonify({'error': 'Invalid URL'}), 400

    url = url.strip()
    logger.info(f"POST /api/download - URL: {url}")
    try:
        result = downloader.download_video(url, payload.get('cookieFile'))
    except downloader.DownloadError as e:
        logger.error(f"Download error for URL {url}: {e}")
        return jsonify({'error': str(e)}), 500

    logger.info(f"Sending result for {shorten(url, 50)}: {result.get('filename') or 'error'}")
    return jsonify(result)


@app.route('/api/download/batch', methods=['POST'])
def download_batch():
    payload = request_payload()
    urls = payload.get('urls')

    if not urls or not isinstance(urls, list):
        logger.error("Batch error: invalid or empty URLs array")
        return jsonify({'error': 'URLs array is required and must not be empty'}), 400
    if len(urls) > BATCH_MAX_URLS:
        return jsonify({'error': f'Too many URLs (max {BATCH_MAX_URLS} per batch)'}), 400

    total = len(urls)
    batch_id = generate_batch_id([str(url) for url in urls])
    accepted_at = datetime.now().isoformat()

    update_batch_status(batch_id, {
        'status': 'queued',
        'accepted_at': accepted_at,
        'total': total,
        'completed_count': 0,
        'failed_count': 0,
        'items': [
            {'index': index, 'url': url, 'status': 'pending'}
            for index, url in enumerate(urls)
        ],
    })

    start_batch_job(batch_id, urls, payload.get('cookieFile'))
    logger.info(f"Batch {batch_id} accepted: processing {total} URLs in background")

    return jsonify({
        'success': True,
        'message': f'Batch download started for {total} videos. Processing in background.',
        'total': total,
        'acceptedAt': accepted_at,
        'batchId': batch_id,
    }), 202


@app.route('/api/download/batch/<batch_id>')
def batch_status(batch_id):
    batch = get_batch_status().get(batch_id)
    if not batch:
        return jsonify({'error': 'Batch not found', 'batchId': batch_id}), 404
    return jsonify({'batchId': batch_id, **batch})


@app.route('/downloads/<path:filename>')
def serve_download(filename):
    response = send_from_directory(downloader.DOWNLOAD_FOLDER, filename)
    content_type = MEDIA_CONTENT_TYPES.get(os.path.splitext(filename)[1].lower())
    if content_type:
        response.headers['Content-Type'] = content_type
    response.headers['Cache-Control'] = 'no-cache, no-store, must-revalidate'
    response.headers['Pragma'] = 'no-cache'
    response.headers['Expires'] = '0'
    return response


@app.route('/cookies/<path:filename>')
def serve_cookie(filename):
    return send_from_directory(downloader.COOKIES_FOLDER, filename)


# --- Error handling ---

@app.errorhandler(404)
def not_found(e):
    logger.info(f"404 - Unmatched route: {request.method} {request.path}")
    return jsonify({'error': 'Route not found', 'path': request.path, 'method': request.method}), 404


# A known path with the wrong method counts as an unmatched route
@app.errorhandler(405)
def method_not_allowed(e):
    return not_found(e)


@app.errorhandler(413)
def too_large(e):
    return jsonify({'error': 'Request body too large'}), 413


@app.errorhandler(Exception)
def unhandled_error(e):
    if isinstance(e, HTTPException):
        return e
    logger.exception(f"Unhandled error: {e}")
    return jsonify({'error': 'Internal server error', 'message': str(e)}), 500


# --- Background workers & shutdown ---

def cleanup_worker(stop_event):
    while not stop_event.wait(CLEANUP_INTERVAL):
        try:
            downloader.cleanup_old_files()
            pruned = prune_batch_status()
            if pruned:
                logger.info(f"Pruned {pruned} old batch records")
        except Exception as e:
            logger.error(f"Cleanup error: {e}")


def start_cleanup(stop_event=None):
    if stop_event is None:
        stop_event = threading.Event()
    cleanup_thread = threading.Thread(target=cleanup_worker, args=(stop_event,), name='cleanup-worker', daemon=True)
    cleanup_thread.start()
    logger.info(f"Cleanup started: removing files older than {downloader.FILE_RETENTION_HOURS}h every {CLEANUP_INTERVAL}s")
    return cleanup_thread


def signal_handler(sig, frame):
    logger.info(f"Received signal {sig}. Gracefully shutting down...")
    try:
        for filename in os.listdir(downloader.DOWNLOAD_FOLDER):
            if filename.endswith(('.part', '.ytdl')):
                try:
                    os.remove(os.path.join(downloader.DOWNLOAD_FOLDER, filename))
                    logger.info(f"Cleaned up partial download: {filename}")
                except OSError as e:
                    logger.warning(f"Could not remove partial download {filename}: {e}")
    except OSError as e:
        logger.error(f"Error during cleanup: {e}")
    logger.info("Shutdown complete.")
    sys.exit(0)


if BACKGROUND_TASKS_ENABLED:
    downloader.ensure_ytdlp()
    logger.info("yt-dlp setup check completed")
    start_cleanup()


if __name__ == '__main__':
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)
    logger.info(f"Server running on http://0.0.0.0:{PORT}")
    app.run(host='0.0.0.0', port=PORT, debug=False)
