# stream_sync_API/app/api/v1/API_Deps/Sync_DB_Deps.py
from pathlib import Path
from typing import Union

from fastapi import Request
from loguru import logger
#
# Local Imports
from stream_sync_API.app.core.DB_Management.Sync_Store_DB import SyncDocumentStore, SyncStoreError
#
#######################################################################################################################

# The store is built once by the application lifespan and kept on app.state;
# handlers receive it through this dependency instead of a module-level handle.
STORE_STATE_ATTR = "sync_store"


def open_sync_store(db_path: Union[str, Path]) -> SyncDocumentStore:
    logger.info(f"Opening sync document store at {db_path}")
    return SyncDocumentStore(db_path)


def get_sync_store(request: Request) -> SyncDocumentStore:
    store = getattr(request.app.state, STORE_STATE_ATTR, None)
    if store is None:
        logger.error("Sync document store requested before application startup completed.")
        raise SyncStoreError("Sync document store is not available.")
    return store

#
# End of Sync_DB_Deps.py
#######################################################################################################################
