"""
Unit tests for ServerController.

Uses the in-memory container runtime to check provisioning, rollback,
lifecycle transitions and the best-effort proxy wiring around them.
"""

import asyncio
import json

import pytest

from mcm_common.errors import (
    ConflictError,
    NotFoundError,
    RuntimeOperationError,
    ValidationError,
)
from mcm_common.models import ContainerStatus


class TestCreateServer:
    """Test suite for server creation."""

    @pytest.mark.asyncio
    async def test_defaults_and_resources(self, services, fake_cm):
        server = await services.controller.create_server("alpha")

        assert server.max_players == 20
        assert server.motd == "Minecraft Server - alpha"
        assert server.version == "LATEST"
        assert server.status == ContainerStatus.CREATING
        assert server.volume_id == f"mc-server-{server.id}"

        container = fake_cm.containers[server.container_id]
        assert container.spec.name == f"mc-server-{server.id}"
        assert container.spec.mount_path == "/data"
        assert container.spec.restart_policy == "unless-stopped"
        assert container.spec.labels == {
            "minecraft-server-id": server.id,
            "minecraft-server-name": "alpha",
        }
        assert not container.running

        stored = await services.repository.get_server(server.id)
        assert stored.name == "alpha"

    @pytest.mark.asyncio
    async def test_environment_without_proxy(self, services, fake_cm):
        server = await services.controller.create_server(
            "alpha", max_players=50, motd="Welcome", version="1.20.4"
        )

        env = fake_cm.containers[server.container_id].spec.env
        assert env == {
            "EULA": "TRUE",
            "MAX_PLAYERS": "50",
            "MOTD": "Welcome",
            "VERSION": "1.20.4",
            "TYPE": "PAPER",
        }
        assert "run_helper_container" not in fake_cm.call_names()

    @pytest.mark.asyncio
    async def test_environment_and_patch_behind_proxy(self, services, fake_cm):
        """Test that a proxy-backed server trusts forwarded identities and gets its patch."""
        await services.reconciler.ensure_proxy_exists()

        server = await services.controller.create_server("alpha")

        env = fake_cm.containers[server.container_id].spec.env
        assert env["ONLINE_MODE"] == "FALSE"
        assert env["PATCH_DEFINITIONS"] == "/data/patches"

        patch = json.loads(fake_cm.volumes[server.volume_id]["/data/patches/bungeecord.json"])
        assert patch["file"] == "/data/spigot.yml"
        assert patch["ops"][0]["$set"]["path"] == "$.settings.bungeecord"
        assert patch["ops"][0]["$set"]["value"] is True

        names = fake_cm.call_names()
        assert names.index("run_helper_container") < names.index("connect_network")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["", "-alpha", "has space", "a" * 64, "try", "dots.not.allowed"])
    async def test_invalid_names(self, services, fake_cm, name):
        with pytest.raises(ValidationError):
            await services.controller.create_server(name)
        assert fake_cm.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_players", [0, -1, 1001])
    async def test_invalid_max_players(self, services, max_players):
        with pytest.raises(ValidationError):
            await services.controller.create_server("alpha", max_players=max_players)

    @pytest.mark.asyncio
    async def test_duplicate_name_leaves_no_orphans(self, services, fake_cm):
        """Test that the second create with a taken name conflicts and provisions nothing."""
        await services.controller.create_server("alpha")
        containers_before = dict(fake_cm.containers)
        volumes_before = dict(fake_cm.volumes)

        with pytest.raises(ConflictError):
            await services.controller.create_server("alpha")

        assert fake_cm.containers.keys() == containers_before.keys()
        assert fake_cm.volumes.keys() == volumes_before.keys()
        assert len(await services.repository.list_servers()) == 1

    @pytest.mark.asyncio
    async def test_persist_conflict_rolls_back_container_and_volume(self, services, fake_cm):
        """Test rollback when the name is taken between the check and the write."""
        repo = services.repository
        original_create = repo.create_server

        async def conflicting_create(server):
            raise ConflictError(f"Server with name '{server.name}' already exists")

        repo.create_server = conflicting_create

        with pytest.raises(ConflictError):
            await services.controller.create_server("alpha")

        repo.create_server = original_create
        assert fake_cm.containers == {}
        assert fake_cm.volumes == {}

    @pytest.mark.asyncio
    async def test_container_failure_rolls_back_volume(self, services, fake_cm):
        fake_cm.failures["create_container"] = RuntimeOperationError("no such image")

        with pytest.raises(RuntimeOperationError):
            await services.controller.create_server("alpha")

        assert fake_cm.volumes == {}
        assert await services.repository.list_servers() == []

    @pytest.mark.asyncio
    async def test_post_creation_failures_do_not_unwind(self, services, fake_cm):
        """Test that patch, connect and regenerate failures leave the server in place."""
        await services.reconciler.ensure_proxy_exists()
        fake_cm.failures["run_helper_container"] = RuntimeOperationError("helper failed")
        fake_cm.failures["connect_network"] = RuntimeOperationError("connect failed")
        fake_cm.config_write_exit_code = 1

        server = await services.controller.create_server("alpha")

        assert server.container_id in fake_cm.containers
        assert (await services.repository.get_server(server.id)).name == "alpha"


class TestLifecycle:
    """Test suite for start/stop/update/delete."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, services, fake_cm):
        server = await services.controller.create_server("alpha")

        started = await services.controller.start_server(server.id)
        assert started.status == ContainerStatus.RUNNING
        assert fake_cm.containers[server.container_id].running

        stopped = await services.controller.stop_server(server.id)
        assert stopped.status == ContainerStatus.STOPPED
        assert ("stop_container", server.container_id, 5) in fake_cm.calls
        assert (await services.repository.get_server(server.id)).status == ContainerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_start_refreshes_routing(self, services, fake_cm):
        await services.reconciler.ensure_proxy_exists()
        server = await services.controller.create_server("alpha")
        fake_cm.container_by_name("mc-proxy-main").files.clear()

        await services.controller.start_server(server.id)

        assert "alpha = " in fake_cm.deployed_config()

    @pytest.mark.asyncio
    async def test_unknown_server(self, services):
        with pytest.raises(NotFoundError):
            await services.controller.start_server("missing")
        with pytest.raises(NotFoundError):
            await services.controller.stop_server("missing")
        with pytest.raises(NotFoundError):
            await services.controller.delete_server("missing")

    @pytest.mark.asyncio
    async def test_start_without_container(self, services, fake_cm):
        server = await services.controller.create_server("alpha")
        await fake_cm.remove_container(server.container_id, force=True)
        await services.controller.get_server(server.id)  # sync clears the handle

        with pytest.raises(RuntimeOperationError):
            await services.controller.start_server(server.id)

    @pytest.mark.asyncio
    async def test_update_server(self, services):
        server = await services.controller.create_server("alpha")

        updated = await services.controller.update_server(server.id, max_players=64, motd="New")

        assert updated.max_players == 64
        assert updated.motd == "New"
        assert updated.version == "LATEST"
        stored = await services.repository.get_server(server.id)
        assert stored.max_players == 64

    @pytest.mark.asyncio
    async def test_update_validates(self, services):
        server = await services.controller.create_server("alpha")

        with pytest.raises(ValidationError):
            await services.controller.update_server(server.id, max_players=5000)
        with pytest.raises(ValidationError):
            await services.controller.update_server(server.id, version="  ")

    @pytest.mark.asyncio
    async def test_delete_order(self, services, fake_cm):
        """Test that runtime objects are removed before the registry row."""
        server = await services.controller.create_server("alpha")
        await services.controller.start_server(server.id)
        fake_cm.calls.clear()

        deleted = await services.controller.delete_server(server.id)

        assert deleted.id == server.id
        names = fake_cm.call_names()
        assert names.index("stop_container") < names.index("remove_container")
        assert names.index("remove_container") < names.index("remove_volume")
        assert ("remove_container", server.container_id, True) in fake_cm.calls
        assert fake_cm.containers == {}
        assert server.volume_id not in fake_cm.volumes
        with pytest.raises(NotFoundError):
            await services.repository.get_server(server.id)

    @pytest.mark.asyncio
    async def test_delete_ignores_stop_failure(self, services, fake_cm):
        server = await services.controller.create_server("alpha")
        fake_cm.failures["stop_container"] = RuntimeOperationError("already stopped")

        await services.controller.delete_server(server.id)

        assert await services.repository.list_servers() == []

    @pytest.mark.asyncio
    async def test_delete_keeps_row_when_removal_fails(self, services, fake_cm):
        server = await services.controller.create_server("alpha")
        fake_cm.failures["remove_volume"] = RuntimeOperationError("volume is in use")

        with pytest.raises(RuntimeOperationError):
            await services.controller.delete_server(server.id)

        assert (await services.repository.get_server(server.id)).name == "alpha"

    @pytest.mark.asyncio
    async def test_reads_sync_state(self, services, fake_cm):
        server = await services.controller.create_server("alpha")
        await services.controller.start_server(server.id)
        fake_cm.containers[server.container_id].running = False

        listed = await services.controller.list_servers()
        fetched = await services.controller.get_server(server.id)

        assert listed[0].status == ContainerStatus.STOPPED
        assert fetched.status == ContainerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_list_skips_server_deleted_while_listing(self, services, fake_cm):
        """Test that a concurrent delete drops the row instead of failing the list."""
        alpha = await services.controller.create_server("alpha")
        beta = await services.controller.create_server("beta")
        probe = fake_cm.get_container_state

        async def delete_beta_while_probing_alpha(container_id):
            if container_id == alpha.container_id:
                await services.controller.delete_server(beta.id)
            return await probe(container_id)

        fake_cm.get_container_state = delete_beta_while_probing_alpha

        listed = await services.controller.list_servers()

        assert [s.name for s in listed] == ["alpha"]

    @pytest.mark.asyncio
    async def test_locks_are_released(self, services):
        """Test that per-server locks do not accumulate, even for unknown ids."""
        for i in range(5):
            with pytest.raises(NotFoundError):
                await services.controller.start_server(f"missing-{i}")

        server = await services.controller.create_server("alpha")
        await services.controller.update_server(server.id, motd="Hello")
        await asyncio.gather(
            services.controller.start_server(server.id),
            services.controller.stop_server(server.id),
        )
        await services.controller.delete_server(server.id)

        assert services.controller._locks == {}


class TestConsole:
    """Test suite for commands and logs."""

    @pytest.mark.asyncio
    async def test_execute_command(self, services, fake_cm):
        server = await services.controller.create_server("alpha")
        await services.controller.start_server(server.id)
        fake_cm.command_output = "There are 0 of a max of 20 players online\n"

        output = await services.controller.execute_command(server.id, "list")

        assert output == "There are 0 of a max of 20 players online\n"
        assert ("exec_in_container", server.container_id, ["rcon-cli", "list"]) in fake_cm.calls

    @pytest.mark.asyncio
    async def test_execute_command_failure_is_surfaced(self, services, fake_cm):
        server = await services.controller.create_server("alpha")
        await services.controller.start_server(server.id)
        fake_cm.command_exit_code = 1
        fake_cm.command_output = "Failed to connect to RCON\n"

        with pytest.raises(RuntimeOperationError, match="Failed to connect to RCON"):
            await services.controller.execute_command(server.id, "list")

    @pytest.mark.asyncio
    async def test_empty_command(self, services):
        server = await services.controller.create_server("alpha")

        with pytest.raises(ValidationError):
            await services.controller.execute_command(server.id, "  ")

    @pytest.mark.asyncio
    async def test_stream_logs(self, services, fake_cm):
        server = await services.controller.create_server("alpha")
        fake_cm.logs[server.container_id] = ["[Server] Starting\n", "[Server] Done\n"]

        lines = [
            line
            async for line in services.controller.stream_logs(server.id, follow=False, tail="all")
        ]

        assert lines == ["[Server] Starting\n", "[Server] Done\n"]
        assert ("stream_logs", server.container_id, False, "all") in fake_cm.calls
