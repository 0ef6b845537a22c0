from typing import Dict, Optional, Union

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ciphervault.client.commands import VaultCommands
from ciphervault.core.models import (
    EncryptedData,
    EntryCreateRequest,
    EntryLookup,
    EntryUpdateRequest,
    GeneratorConfig,
    MergedView,
    StorageTarget,
    WriteResult,
)

from .deps import get_commands

router = APIRouter()


class UnlockRequest(BaseModel):
    master_password: str


class VerifyRequest(BaseModel):
    secret: str


class VerifyResponse(BaseModel):
    valid: bool


class DecryptRequest(BaseModel):
    encrypted: EncryptedData
    user_secret: str


class DecryptDescriptionRequest(BaseModel):
    encrypted: Union[EncryptedData, str]
    user_secret: str


class PlaintextResponse(BaseModel):
    value: str


@router.post("/initialize")
def initialize_manager(payload: UnlockRequest, commands: VaultCommands = Depends(get_commands)) -> Dict[str, bool]:
    return commands.initialize_manager(payload.master_password)


@router.post("/verify", response_model=VerifyResponse)
def verify_master_password(payload: VerifyRequest, commands: VaultCommands = Depends(get_commands)):
    return {"valid": commands.verify_master_password(payload.secret)}


@router.post("/lock", status_code=204)
def lock(commands: VaultCommands = Depends(get_commands)):
    commands.lock()


@router.post("/passwords", response_model=WriteResult)
def add_password(payload: EntryCreateRequest, commands: VaultCommands = Depends(get_commands)):
    return commands.add_password(payload)


@router.get("/passwords", response_model=MergedView)
def list_passwords(query: Optional[str] = None, target: StorageTarget = StorageTarget.ALL,
                   commands: VaultCommands = Depends(get_commands)):
    if query is not None:
        return commands.search_passwords_in_storage(query, target)
    return commands.get_all_passwords_from_storage(target)


@router.post("/passwords/decrypt", response_model=PlaintextResponse)
def decrypt_password(payload: DecryptRequest, commands: VaultCommands = Depends(get_commands)):
    return {"value": commands.decrypt_password(payload.encrypted, payload.user_secret)}


@router.post("/passwords/decrypt-description", response_model=PlaintextResponse)
def decrypt_description(payload: DecryptDescriptionRequest, commands: VaultCommands = Depends(get_commands)):
    return {"value": commands.decrypt_description(payload.encrypted, payload.user_secret)}


@router.get("/passwords/{entry_id}", response_model=EntryLookup)
def get_password(entry_id: str, target: StorageTarget = StorageTarget.ALL,
                 commands: VaultCommands = Depends(get_commands)):
    return commands.get_password_by_id_from_storage(entry_id, target)


@router.patch("/passwords/{entry_id}", response_model=WriteResult)
def update_password(entry_id: str, payload: EntryUpdateRequest, commands: VaultCommands = Depends(get_commands)):
    return commands.update_password(entry_id, payload)


@router.delete("/passwords/{entry_id}", response_model=WriteResult)
def delete_password(entry_id: str, commands: VaultCommands = Depends(get_commands)):
    return commands.delete_password(entry_id)


@router.post("/generate", response_model=PlaintextResponse)
def generate(payload: Optional[GeneratorConfig] = None, commands: VaultCommands = Depends(get_commands)):
    return {"value": commands.generate_password(payload)}
