"""
Service dependencies for the v1 routers.

Each service is built per request from the process-wide database and storage
clients. Declaring the clients with ``Depends`` lets tests swap them through
``app.dependency_overrides``.
"""

from fastapi import Depends

from beatmarket.config import Settings, get_settings
from beatmarket.core.database import DatabaseClient, get_db_client
from beatmarket.core.storage import StorageClient, get_storage_client
from beatmarket.services.audio_analysis_service import AudioAnalysisService
from beatmarket.services.catalog_service import CatalogService
from beatmarket.services.ledger_service import LedgerService
from beatmarket.services.payment_service import PaymentService
from beatmarket.services.purchase_service import PurchaseService
from beatmarket.services.upload_service import UploadService


def get_audio_analysis_service(settings: Settings = Depends(get_settings)) -> AudioAnalysisService:
    return AudioAnalysisService(settings)


def get_upload_service(
    db_client: DatabaseClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
    analysis: AudioAnalysisService = Depends(get_audio_analysis_service),
    settings: Settings = Depends(get_settings),
) -> UploadService:
    """Dependency injection for UploadService."""
    return UploadService(db_client, storage, analysis=analysis, settings=settings)


def get_ledger_service(db_client: DatabaseClient = Depends(get_db_client)) -> LedgerService:
    return LedgerService(db_client)


def get_catalog_service(
    db_client: DatabaseClient = Depends(get_db_client),
    storage: StorageClient = Depends(get_storage_client),
    settings: Settings = Depends(get_settings),
) -> CatalogService:
    return CatalogService(db_client, storage, settings=settings)


def get_purchase_service(
    db_client: DatabaseClient = Depends(get_db_client),
    ledger: LedgerService = Depends(get_ledger_service),
    catalog: CatalogService = Depends(get_catalog_service),
    storage: StorageClient = Depends(get_storage_client),
    settings: Settings = Depends(get_settings),
) -> PurchaseService:
    """Dependency injection for PurchaseService."""
    return PurchaseService(db_client, ledger, catalog, storage, settings=settings)


def get_payment_service(
    ledger: LedgerService = Depends(get_ledger_service),
    settings: Settings = Depends(get_settings),
) -> PaymentService:
    return PaymentService(ledger, settings=settings)
