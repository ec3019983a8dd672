import logging
import os

from dotenv import load_dotenv

# .env must be loaded before the modules below read their settings
load_dotenv()

import pos_store
from pos_server import POS_DB_PATH, SYNC_IN_BACKGROUND, create_app
from pos_service import PosService
from sync_worker import SyncOrchestrator


def build_service(db_path: str = POS_DB_PATH, background: bool = SYNC_IN_BACKGROUND) -> PosService:
    store = pos_store.connect(db_path)
    sync = SyncOrchestrator(store, background=background)
    return PosService(store, sync)


if __name__ == '__main__':
    level_name = (os.getenv('POS_LOG_LEVEL') or 'INFO').strip().upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format="%(asctime)s %(levelname)s %(message)s")
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')

    service = build_service()
    outcome = service.startup()
    logging.info("Startup pull: %s (%s)", outcome, service.sync.status.message)
    app = create_app(service)
    try:
        app.run(host=host, port=port, debug=debug, use_reloader=False)
    finally:
        service.sync.stop(timeout=5)
        service.store.close()
