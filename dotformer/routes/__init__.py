# dotformer/routes/__init__.py
from dotformer.routes.files import router as files_router
from dotformer.routes.billing import router as billing_router
from dotformer.routes.admin import router as admin_router

__all__ = ["files_router", "billing_router", "admin_router"]
