from fastapi.routing import APIRouter

from flag_sync.web.api import monitoring
from flag_sync.web.api.v1.admin import views as v1_admin_views
from flag_sync.web.api.v1.flags import views as v1_flags_views

api_router = APIRouter()
api_router.include_router(monitoring.router)
api_router.include_router(v1_flags_views.router)
api_router.include_router(v1_admin_views.router)
