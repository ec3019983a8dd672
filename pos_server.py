from flask import Flask, jsonify, request
from dotenv import load_dotenv
import os
import logging
from typing import Any, Dict, Optional

from pos_store import StorageFailure

# Load environment variables
load_dotenv()

def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw

_LOG_LEVEL_NAME = (_env_string('POS_LOG_LEVEL') or 'INFO').upper()
POS_DB_PATH = _env_string('POS_DB_PATH', 'pos.db')
SYNC_IN_BACKGROUND = _env_string('SYNC_IN_BACKGROUND', '1') == '1'


def _payload() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _error(message: str, code: int):
    return jsonify({'status': 'error', 'message': message}), code


def create_app(service) -> Flask:
    """Build the JSON API around a PosService."""
    app = Flask(__name__)
    app.config['POS_SERVICE'] = service
    app.logger.setLevel(getattr(logging, _LOG_LEVEL_NAME, logging.INFO))

    @app.after_request
    def add_no_cache_headers(response):
        response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
        response.headers['Pragma'] = 'no-cache'
        response.headers['X-Content-Type-Options'] = 'nosniff'
        return response

    @app.errorhandler(StorageFailure)
    def handle_storage_failure(exc):
        app.logger.error('Local storage failure: %s', exc)
        return _error(f'Local storage error: {exc}', 500)

    @app.errorhandler(ValueError)
    def handle_bad_input(exc):
        return _error(str(exc), 400)

    @app.errorhandler(LookupError)
    def handle_missing(exc):
        return _error(str(exc), 404)

    @app.route('/health')
    def health():
        return jsonify({'status': 'success'})

    # ---- Products ----
    @app.route('/api/products')
    def api_list_products():
        return jsonify({'status': 'success', 'products': service.list_products()})

    @app.route('/api/products', methods=['POST'])
    def api_add_product():
        data = _payload()
        product = service.add_product(data.get('name'), data.get('price'))
        return jsonify({'status': 'success', 'product': product, 'sync': service.sync.status.to_dict()}), 201

    @app.route('/api/products', methods=['DELETE'])
    def api_clear_products():
        service.clear_products()
        return jsonify({'status': 'success', 'sync': service.sync.status.to_dict()})

    @app.route('/api/products/<int:product_id>', methods=['DELETE'])
    def api_delete_product(product_id: int):
        if not service.delete_product(product_id):
            return _error('Product not found', 404)
        return jsonify({'status': 'success', 'sync': service.sync.status.to_dict()})

    # ---- Entries ----
    @app.route('/api/entries')
    def api_list_entries():
        scope = (request.args.get('scope') or 'all').strip().lower()
        if scope == 'today':
            entries = service.entries_today()
        elif scope == 'all':
            entries = service.list_entries()
        else:
            return _error("scope must be 'today' or 'all'", 400)
        return jsonify({'status': 'success', 'entries': entries})

    @app.route('/api/entries', methods=['POST'])
    def api_add_entry():
        data = _payload()
        entry = service.add_entry(data.get('product_id'), data.get('quantity'))
        return jsonify({'status': 'success', 'entry': entry, 'sync': service.sync.status.to_dict()}), 201

    @app.route('/api/entries', methods=['DELETE'])
    def api_clear_entries():
        service.clear_entries()
        return jsonify({'status': 'success', 'sync': service.sync.status.to_dict()})

    @app.route('/api/entries/<int:entry_id>', methods=['DELETE'])
    def api_delete_entry(entry_id: int):
        if not service.delete_entry(entry_id):
            return _error('Entry not found', 404)
        return jsonify({'status': 'success', 'sync': service.sync.status.to_dict()})

    @app.route('/api/totals')
    def api_totals():
        totals = service.summary()
        return jsonify({'status': 'success', **totals})

    # ---- Settings / maintenance ----
    @app.route('/api/settings')
    def api_get_settings():
        return jsonify({'status': 'success', 'settings': service.settings()})

    @app.route('/api/settings', methods=['POST'])
    def api_save_settings():
        data = _payload()
        service.save_settings(data.get('owner'), data.get('repo'), data.get('token'))
        return jsonify({'status': 'success', 'message': service.sync.status.message})

    @app.route('/api/clear', methods=['POST'])
    def api_clear():
        service.clear_all_data()
        return jsonify({'status': 'success', 'sync': service.sync.status.to_dict()})

    # ---- Sync ----
    @app.route('/api/sync/status')
    def api_sync_status():
        return jsonify({'status': 'success', 'sync': service.sync.status.to_dict()})

    @app.route('/api/sync/pull', methods=['POST'])
    def api_sync_pull():
        outcome = service.sync.pull()
        return jsonify({'status': 'success', 'outcome': outcome, 'sync': service.sync.status.to_dict()})

    @app.route('/api/sync/push', methods=['POST'])
    def api_sync_push():
        outcome = service.sync.push()
        return jsonify({'status': 'success', 'outcome': outcome, 'sync': service.sync.status.to_dict()})

    return app
