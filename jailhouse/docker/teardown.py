"""Sandbox container teardown utilities.

Removes containers left behind by drivers whose best-effort delete failed,
or by processes that exited while holding a prestarted container.
"""
from loguru import logger

from jailhouse.core.exceptions import DriverError
from jailhouse.docker.driver import DockerDriver


async def reap_managed_containers(driver: DockerDriver) -> int:
    """Remove every Jailhouse-managed container except the driver's own.

    Args:
        driver: Driver used to reach Docker. Its active container, if any,
            is left alone.

    Returns:
        Number of containers removed.
    """
    try:
        containers = await driver.list_managed_containers()
    except DriverError as exc:
        logger.warning("Failed to list sandbox containers", error=str(exc))
        return 0

    own_id = driver.container.id if driver.container else None
    container_ids = [c["Id"] for c in containers if c.get("Id") and c["Id"] != own_id]
    if not container_ids:
        logger.debug("No sandbox containers to clean up")
        return 0

    logger.info("Tearing down sandbox containers", count=len(container_ids))
    removed = 0
    for container_id in container_ids:
        try:
            await driver.remove_container(container_id)
        except DriverError as exc:
            logger.warning(
                "Failed to remove container", container=container_id[:12], error=str(exc),
            )
        else:
            removed += 1
    logger.info("Sandbox containers removed", count=removed)
    return removed
