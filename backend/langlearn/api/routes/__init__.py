# API routes
from langlearn.api.routes import ai_usage
from langlearn.api.routes import subscriptions

__all__ = ["ai_usage", "subscriptions"]
