from typing import Any, Dict

from fastapi import APIRouter, Body, Depends

from ciphervault.client.commands import VaultCommands

from .deps import get_commands

router = APIRouter()


@router.get("")
def get_config(commands: VaultCommands = Depends(get_commands)) -> Dict[str, Any]:
    # remote token comes back masked
    return commands.get_config()


@router.patch("")
def update_config(patch: Dict[str, Any] = Body(...), commands: VaultCommands = Depends(get_commands)) -> Dict[str, Any]:
    return commands.update_config(patch)
