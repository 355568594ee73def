"""Request bodies accepted by the HTTP API."""

from pydantic import BaseModel, Field


class CreateServerRequest(BaseModel):
    name: str = Field(..., description="Unique server name, also its network alias")
    max_players: int | None = Field(None, ge=1, le=1000, description="Defaults to 20")
    motd: str | None = Field(None, description="Defaults to 'Minecraft Server - <name>'")
    version: str | None = Field(None, description="Minecraft version, defaults to LATEST")


class UpdateServerRequest(BaseModel):
    max_players: int | None = Field(None, ge=1, le=1000)
    motd: str | None = None
    version: str | None = None


class UpdateProxyRequest(BaseModel):
    default_server_id: str | None = Field(
        ..., description="Server players land on first; null routes to every server"
    )


class CommandRequest(BaseModel):
    command: str = Field(..., min_length=1, description="Console command run via rcon-cli")
