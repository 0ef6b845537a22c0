from fastapi import Request

from ciphervault.client.commands import VaultCommands


def get_commands(request: Request) -> VaultCommands:
    return request.app.state.commands
