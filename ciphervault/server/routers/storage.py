from typing import Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ciphervault.client.commands import VaultCommands
from ciphervault.core.models import StorageStatus, StorageTarget, SyncReport

from .deps import get_commands

router = APIRouter()


class SyncRequest(BaseModel):
    source: StorageTarget
    target: StorageTarget


@router.get("/status", response_model=Dict[StorageTarget, StorageStatus])
def get_storage_status(commands: VaultCommands = Depends(get_commands)):
    return commands.get_storage_status()


@router.post("/sync", response_model=SyncReport)
def sync_storages(payload: SyncRequest, commands: VaultCommands = Depends(get_commands)):
    return commands.sync_storages(payload.source, payload.target)
