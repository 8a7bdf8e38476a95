from thread_runtime.api.gateway import LocalPersistenceGateway, PersistenceGateway
from thread_runtime.api.http_gateway import HttpPersistenceGateway
from thread_runtime.api.threads_api import ApiResponse, ThreadsApi

__all__ = [
    "ApiResponse",
    "HttpPersistenceGateway",
    "LocalPersistenceGateway",
    "PersistenceGateway",
    "ThreadsApi",
]
