from therapy_chat.client.api import ApiClient, ApiError
from therapy_chat.client.state import AppState, reconcile

__all__ = ["ApiClient", "ApiError", "AppState", "reconcile"]
