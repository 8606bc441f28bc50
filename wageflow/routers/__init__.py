"""Router package - collects all API routers and registers them on the FastAPI app."""

from fastapi import FastAPI

from wageflow.routers import actors, admin, channels, closures, sessions


def register_all_routers(app: FastAPI):
    app.include_router(actors.router)
    app.include_router(channels.router)
    app.include_router(sessions.router)
    app.include_router(closures.router)
    app.include_router(admin.router)
