"""
HTTP client for the fleet server, as used by the job scheduler and the
admin CLI.
"""

import os
from typing import Any

import requests


def get_server_url() -> str:
    """
    Get the fleet server URL from environment variable or use default.

    Environment variables:
    - FLEET_SERVER_URL: Custom server URL
    """
    return os.environ.get("FLEET_SERVER_URL", "http://localhost:8000")


def _url(path: str, server_url: str | None) -> str:
    return f"{(server_url or get_server_url()).rstrip('/')}{path}"


def report_load(
    label: str,
    queue_length: int,
    compute_queue_length: int,
    idle_executors: int,
    server_url: str | None = None,
) -> None:
    """
    Report the current demand figures for a label.

    Raises:
        RuntimeError: If the request fails
    """
    try:
        response = requests.post(
            _url("/load", server_url),
            json={
                "label": label,
                "queue_length": queue_length,
                "compute_queue_length": compute_queue_length,
                "idle_executors": idle_executors,
            },
            timeout=30,
        )
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error reporting load to fleet server: {e}")


def request_provision(
    label: str | None, excess_workload: int, server_url: str | None = None
) -> list[dict[str, Any]]:
    """
    Ask the fleet for capacity.

    Returns:
        Planned provisioning units (may be empty when at capacity)

    Raises:
        LookupError: If no template serves the label
        RuntimeError: If the request fails
    """
    try:
        response = requests.post(
            _url("/provision", server_url),
            json={"label": label, "excess_workload": excess_workload},
            timeout=30,
        )
        if response.status_code == 404:
            raise LookupError(response.json().get("detail", "No matching template"))
        response.raise_for_status()
        return response.json()["planned"]
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error requesting capacity from fleet server: {e}")


def notify_work_started(
    node_name: str, job_name: str, run_id: str, server_url: str | None = None
) -> None:
    """
    Tell the fleet a node started a unit of work.

    Raises:
        LookupError: If the node is unknown
        ValueError: If the node has already run work or is going away
        RuntimeError: If the request fails
    """
    _post_work(node_name, "work-started", job_name, run_id, False, server_url)


def notify_work_completed(
    node_name: str,
    job_name: str,
    run_id: str,
    problems: bool = False,
    server_url: str | None = None,
) -> None:
    """Tell the fleet a node finished its unit of work."""
    _post_work(node_name, "work-completed", job_name, run_id, problems, server_url)


def _post_work(
    node_name: str,
    event: str,
    job_name: str,
    run_id: str,
    problems: bool,
    server_url: str | None,
) -> None:
    try:
        response = requests.post(
            _url(f"/nodes/{node_name}/{event}", server_url),
            json={"job_name": job_name, "run_id": run_id, "problems": problems},
            timeout=30,
        )
        if response.status_code == 404:
            raise LookupError(f"Unknown node: {node_name}")
        if response.status_code == 409:
            raise ValueError(f"Node {node_name} is not accepting work")
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error notifying fleet server: {e}")


def list_nodes(server_url: str | None = None) -> list[dict[str, Any]]:
    """
    List registered fleet members.

    Raises:
        RuntimeError: If the request fails
    """
    try:
        response = requests.get(_url("/nodes", server_url), timeout=30)
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error listing nodes: {e}")


def terminate_node(node_name: str, server_url: str | None = None) -> None:
    """
    Schedule termination of a node.

    Raises:
        LookupError: If the node is unknown
        RuntimeError: If the request fails
    """
    try:
        response = requests.delete(_url(f"/nodes/{node_name}", server_url), timeout=30)
        if response.status_code == 404:
            raise LookupError(f"Unknown node: {node_name}")
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error terminating node: {e}")


def get_snapshot(
    job_name: str, run_id: str, server_url: str | None = None
) -> dict[str, Any] | None:
    """
    Get the image committed for a job run.

    Returns:
        Snapshot details, or None if the run was not snapshotted

    Raises:
        RuntimeError: If the request fails
    """
    try:
        response = requests.get(
            _url("/snapshots", server_url),
            params={"job_name": job_name, "run_id": run_id},
            timeout=30,
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()
    except requests.exceptions.RequestException as e:
        raise RuntimeError(f"Error fetching snapshot: {e}")
