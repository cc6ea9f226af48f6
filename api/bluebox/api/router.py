from fastapi import APIRouter

from bluebox.api.routes import admin, applications, health, intros, jobs, me, network, webhooks

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(me.router, prefix="/me", tags=["members"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["jobs"])
api_router.include_router(applications.router, prefix="/applications", tags=["jobs"])
api_router.include_router(network.router, prefix="/network", tags=["network"])
api_router.include_router(intros.router, prefix="/intros", tags=["network"])
api_router.include_router(admin.router, prefix="/admin", tags=["moderation"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["billing"])
