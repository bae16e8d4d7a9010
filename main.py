from __future__ import annotations

import logging

import uvicorn

from avl.api import create_app
from avl.db import Store
from avl.logs import configure_logging
from avl.manager import LifecycleManager
from avl.reconciler import Reconciler
from avl.settings import settings

logger = logging.getLogger("avl.main")


def build_app():
    store = Store(settings.db_path)
    store.init_db()
    manager = LifecycleManager(store)
    host = manager.ensure_local_host()
    logger.info(f"Using host {host.name} at {host.address}; database {store.db_path}")
    if not settings.admin_key:
        logger.warning("AVL_ADMIN_KEY is not set; the /api routes will reject every request")
    reconciler = Reconciler(manager)
    return create_app(manager, admin_key=settings.admin_key, reconciler=reconciler)


def main() -> None:
    configure_logging(settings.log_level)
    uvicorn.run(build_app(), host=settings.api_host, port=settings.api_port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
