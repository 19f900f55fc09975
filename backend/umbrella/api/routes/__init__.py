# API routes
from umbrella.api.routes import health
from umbrella.api.routes import auth
from umbrella.api.routes import account
from umbrella.api.routes import webhooks_identity

__all__ = ["health", "auth", "account", "webhooks_identity"]
