"""Backend API access"""
from .client import BackendClient, ENDPOINTS

__all__ = ["BackendClient", "ENDPOINTS"]
