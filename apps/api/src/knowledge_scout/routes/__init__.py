from knowledge_scout.routes.admin import router as admin_router
from knowledge_scout.routes.ask import router as ask_router
from knowledge_scout.routes.docs import router as docs_router

__all__ = ["admin_router", "ask_router", "docs_router"]
