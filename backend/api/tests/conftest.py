import logging
from unittest.mock import AsyncMock

import pytest
from mongomock_motor import AsyncMongoMockClient

from backend.repositories.user_repository import UserRepository

logging.basicConfig(level=logging.INFO)


@pytest.fixture
def users_collection():
    return AsyncMongoMockClient()["test_user_registration_db"]["users"]


@pytest.fixture
def repository(users_collection):
    return UserRepository(users_collection, logging.getLogger("test_user_repository"))


@pytest.fixture
def google_service():
    service = AsyncMock()
    service.get_email_with_auto_refresh.side_effect = lambda user: user.get("email")
    return service


@pytest.fixture
def notification_service():
    service = AsyncMock()
    service.send_registration_confirmation.return_value = True
    return service
