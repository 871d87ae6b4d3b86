from datetime import date

from unittest.mock import AsyncMock

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from backend.api.errors import UserNotFoundError, ValidationError
from backend.api.services.registration_service import (
    MSG_BIRTH_DATE_BEFORE,
    MSG_BIRTH_DATE_FORMAT,
    MSG_CPF_INVALID,
    MSG_CPF_REQUIRED,
    MSG_CPF_TAKEN,
    MSG_NAME_MAX,
    MSG_NAME_REQUIRED,
    RegistrationService,
)

TODAY = date(2026, 1, 10)


@pytest.fixture
def service(repository, google_service, notification_service):
    return RegistrationService(repository, google_service, notification_service, today=lambda: TODAY)


async def _pending_user(repository, email="ana@example.com"):
    return await repository.create({"name": "Ana", "email": email, "google_id": "g-1", "registration_completed": False})


@pytest.mark.asyncio
async def test_complete_registration_success(service, repository, users_collection, notification_service):
    user = await _pending_user(repository)

    result = await service.complete_registration(user["id"], {"name": "ana maria", "birth_date": "1990-05-15", "cpf": "529.982.247-25"})

    assert result["registration_completed"] is True
    assert result["cpf"] == "529.982.247-25"
    assert result["name"] == "Ana Maria"
    assert result["birth_date"] == "1990-05-15"
    stored = await users_collection.find_one({"_id": ObjectId(user["id"])})
    assert stored["cpf"] == "52998224725"
    notification_service.send_registration_confirmation.assert_awaited_once_with(user["id"], "ana@example.com")


@pytest.mark.asyncio
async def test_brazilian_date_format_is_accepted(service, repository):
    user = await _pending_user(repository)
    result = await service.complete_registration(user["id"], {"name": "Ana", "birth_date": "15/05/1990", "cpf": "52998224725"})
    assert result["birth_date"] == "1990-05-15"


@pytest.mark.asyncio
async def test_checksum_invalid_cpf_is_field_error_and_nothing_changes(service, repository, users_collection, notification_service):
    user = await _pending_user(repository)

    with pytest.raises(ValidationError) as exc_info:
        await service.complete_registration(user["id"], {"name": "Ana", "birth_date": "1990-05-15", "cpf": "123.456.789-00"})

    assert exc_info.value.errors == {"cpf": [MSG_CPF_INVALID]}
    stored = await users_collection.find_one({"_id": ObjectId(user["id"])})
    assert stored["registration_completed"] is False
    assert "cpf" not in stored
    notification_service.send_registration_confirmation.assert_not_awaited()


@pytest.mark.asyncio
@pytest.mark.parametrize("cpf", ["11111111111", "123456789", "123456789012"])
async def test_degenerate_and_wrong_length_cpfs_are_invalid(service, repository, cpf):
    user = await _pending_user(repository)
    with pytest.raises(ValidationError) as exc_info:
        await service.complete_registration(user["id"], {"name": "Ana", "birth_date": "1990-05-15", "cpf": cpf})
    assert exc_info.value.errors["cpf"] == [MSG_CPF_INVALID]


@pytest.mark.asyncio
async def test_cpf_of_another_user_is_rejected(service, repository):
    await repository.create({"name": "Bia", "email": "bia@example.com", "cpf": "52998224725", "registration_completed": True})
    user = await _pending_user(repository)

    with pytest.raises(ValidationError) as exc_info:
        await service.complete_registration(user["id"], {"name": "Ana", "birth_date": "1990-05-15", "cpf": "529.982.247-25"})

    assert exc_info.value.errors == {"cpf": [MSG_CPF_TAKEN]}


@pytest.mark.asyncio
async def test_user_may_resubmit_own_cpf(service, repository):
    user = await repository.create({"name": "Ana", "email": "ana@example.com", "cpf": "52998224725"})
    result = await service.complete_registration(user["id"], {"name": "Ana", "birth_date": "1990-05-15", "cpf": "52998224725"})
    assert result["registration_completed"] is True


@pytest.mark.asyncio
@pytest.mark.parametrize("birth_date,message", [
    ("2026-01-10", MSG_BIRTH_DATE_BEFORE),
    ("2030-01-01", MSG_BIRTH_DATE_BEFORE),
    ("31/02/1990", MSG_BIRTH_DATE_FORMAT),
    ("ontem", MSG_BIRTH_DATE_FORMAT),
])
async def test_birth_date_must_be_valid_and_before_today(service, repository, birth_date, message):
    user = await _pending_user(repository)
    with pytest.raises(ValidationError) as exc_info:
        await service.complete_registration(user["id"], {"name": "Ana", "birth_date": birth_date, "cpf": "52998224725"})
    assert exc_info.value.errors == {"birth_date": [message]}


@pytest.mark.asyncio
async def test_errors_from_all_fields_are_aggregated(service, repository):
    user = await _pending_user(repository)
    with pytest.raises(ValidationError) as exc_info:
        await service.complete_registration(user["id"], {"name": "", "birth_date": None, "cpf": None})
    errors = exc_info.value.errors
    assert errors["name"] == [MSG_NAME_REQUIRED]
    assert "birth_date" in errors
    assert errors["cpf"] == [MSG_CPF_REQUIRED]


@pytest.mark.asyncio
async def test_name_longer_than_255_is_rejected(service, repository):
    user = await _pending_user(repository)
    with pytest.raises(ValidationError) as exc_info:
        await service.complete_registration(user["id"], {"name": "a" * 256, "birth_date": "1990-05-15", "cpf": "52998224725"})
    assert exc_info.value.errors == {"name": [MSG_NAME_MAX]}


@pytest.mark.asyncio
async def test_unknown_user_raises_not_found(service):
    with pytest.raises(UserNotFoundError):
        await service.complete_registration(str(ObjectId()), {"name": "Ana", "birth_date": "1990-05-15", "cpf": "52998224725"})


@pytest.mark.asyncio
async def test_enqueue_failure_keeps_registration(service, repository, notification_service):
    notification_service.send_registration_confirmation.return_value = False
    user = await _pending_user(repository)

    result = await service.complete_registration(user["id"], {"name": "Ana", "birth_date": "1990-05-15", "cpf": "52998224725"})

    assert result["registration_completed"] is True
    assert (await repository.find_by_id(user["id"]))["registration_completed"] is True


@pytest.mark.asyncio
async def test_notification_uses_email_from_google_account(service, repository, google_service, notification_service):
    google_service.get_email_with_auto_refresh.side_effect = None
    google_service.get_email_with_auto_refresh.return_value = "ana.google@example.com"
    user = await _pending_user(repository)

    await service.complete_registration(user["id"], {"name": "Ana", "birth_date": "1990-05-15", "cpf": "52998224725"})

    notification_service.send_registration_confirmation.assert_awaited_once_with(user["id"], "ana.google@example.com")


@pytest.mark.asyncio
async def test_registration_status(service, repository):
    user = await _pending_user(repository)

    status = await service.get_registration_status(user["id"])
    assert status["completed"] is False
    assert status["user"]["id"] == user["id"]

    missing = await service.get_registration_status(str(ObjectId()))
    assert missing == {"completed": False, "user": None}


@pytest.mark.asyncio
async def test_cpf_taken_between_check_and_update_is_field_error(service, repository, users_collection, notification_service):
    user = await _pending_user(repository)

    async def update_after_concurrent_insert(user_id, values):
        await users_collection.insert_one({"name": "Bia", "email": "bia@example.com", "cpf": "52998224725", "registration_completed": True})
        raise DuplicateKeyError(
            'E11000 duplicate key error collection: test.users index: cpf_1 dup key: { cpf: "52998224725" }',
            11000,
            {"keyPattern": {"cpf": 1}},
        )

    repository.update = update_after_concurrent_insert

    with pytest.raises(ValidationError) as exc_info:
        await service.complete_registration(user["id"], {"name": "Ana", "birth_date": "1990-05-15", "cpf": "529.982.247-25"})

    assert exc_info.value.errors == {"cpf": [MSG_CPF_TAKEN]}
    notification_service.send_registration_confirmation.assert_not_awaited()


@pytest.mark.asyncio
async def test_user_deleted_before_update_raises_not_found(service, repository, notification_service):
    user = await _pending_user(repository)
    repository.update = AsyncMock(return_value=None)

    with pytest.raises(UserNotFoundError):
        await service.complete_registration(user["id"], {"name": "Ana", "birth_date": "1990-05-15", "cpf": "52998224725"})

    notification_service.send_registration_confirmation.assert_not_awaited()


@pytest.mark.asyncio
async def test_google_lookup_error_falls_back_to_stored_email(service, repository, google_service, notification_service):
    google_service.get_email_with_auto_refresh.side_effect = ValueError("resposta inválida do Google")
    user = await _pending_user(repository)

    result = await service.complete_registration(user["id"], {"name": "Ana", "birth_date": "1990-05-15", "cpf": "52998224725"})

    assert result["registration_completed"] is True
    notification_service.send_registration_confirmation.assert_awaited_once_with(user["id"], "ana@example.com")
