from fastapi import Request

from stocksync.integrations.setup import SyncPipeline


def get_pipeline(request: Request) -> SyncPipeline:
    """Dependency returning the pipeline built during application startup."""
    return request.app.state.pipeline
