"""Unit tests for sandbox container teardown."""
from jailhouse.docker.driver import DockerDriver
from jailhouse.docker.teardown import reap_managed_containers


class TestReapManagedContainers:
    """Tests for reap_managed_containers()."""

    async def test_removes_leaked_containers(self, fake_transport, make_response) -> None:
        """Should remove every managed container the driver does not own."""
        fake_transport.respond(
            "GET", "/containers/json", make_response(200, [{"Id": "leak1"}, {"Id": "leak2"}]),
        )
        driver = DockerDriver(transport=fake_transport)

        removed = await reap_managed_containers(driver)

        assert removed == 2
        assert fake_transport.paths("DELETE") == ["/containers/leak1", "/containers/leak2"]
        assert fake_transport.calls[-1].query == {"force": 1, "v": 1}

    async def test_skips_own_container(self, fake_transport, make_response) -> None:
        driver = DockerDriver("jailhouse:test", transport=fake_transport)
        await driver.create()
        fake_transport.respond(
            "GET", "/containers/json",
            make_response(200, [{"Id": "container0001"}, {"Id": "leak1"}]),
        )

        removed = await reap_managed_containers(driver)

        assert removed == 1
        assert fake_transport.paths("DELETE") == ["/containers/leak1"]

    async def test_no_containers_is_noop(self, fake_transport, make_response) -> None:
        fake_transport.respond("GET", "/containers/json", make_response(200, []))

        removed = await reap_managed_containers(DockerDriver(transport=fake_transport))

        assert removed == 0
        assert fake_transport.paths("DELETE") == []

    async def test_removal_failure_is_counted_out(self, fake_transport, make_response, docker_error) -> None:
        """A container that cannot be removed does not stop the others."""
        fake_transport.respond(
            "GET", "/containers/json", make_response(200, [{"Id": "stuck"}, {"Id": "leak1"}]),
        )
        fake_transport.respond("DELETE", "/containers/stuck", docker_error)

        removed = await reap_managed_containers(DockerDriver(transport=fake_transport))

        assert removed == 1

    async def test_handles_docker_not_available(self, fake_transport, docker_error) -> None:
        """Should return quietly when containers cannot be listed."""
        fake_transport.respond("GET", "/containers/json", docker_error)

        assert await reap_managed_containers(DockerDriver(transport=fake_transport)) == 0
