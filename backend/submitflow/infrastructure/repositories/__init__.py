from .memory import InMemoryAsyncRequestStore
from .db import DjangoAsyncRequestStore
from .dynamodb import DynamoDbAsyncRequestStore

__all__ = ["InMemoryAsyncRequestStore", "DjangoAsyncRequestStore", "DynamoDbAsyncRequestStore"]
