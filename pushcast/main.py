from pushcast.api.main import app

__all__ = ["app"]
