import json

import httpx

from riskoracle.chain.types import pubkey_str
from riskoracle.errors import FeedValidationError, TaskExecutionError
from riskoracle.oracle.server import AttestRequest

ADDRESS = pubkey_str(bytes([7]) * 32)
OTHER_ADDRESS = pubkey_str(bytes([9]) * 32)
QUEUE = bytes([1]) * 32
QUEUE_PROGRAM = bytes([2]) * 32
PROGRAM_ID = bytes([3]) * 32
COUNTER = bytes([4]) * 32
API_KEY = "range-secret-key"


def range_response(score) -> str:
    return json.dumps({"riskScore": score, "address": ADDRESS})


def fixed_fetch(score, seen=None):
    def fetch(url, headers):
        if seen is not None:
            seen.append((url, headers))
        return range_response(score)

    return fetch


def node_handler(nodes: dict, calls: dict = None):
    """Route POST <host>/oracle/attest to the OracleNode registered for that host.

    A node entry may instead be an int status code, answered as-is.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if calls is not None:
            calls[host] = calls.get(host, 0) + 1
        node = nodes[host]
        if isinstance(node, int):
            return httpx.Response(node, json={"detail": "scripted failure"})
        body = json.loads(request.content)
        try:
            attestation = node.attest(AttestRequest(**body))
        except FeedValidationError as e:
            return httpx.Response(400, json={"detail": e.message})
        except TaskExecutionError as e:
            return httpx.Response(502, json={"detail": e.message})
        return httpx.Response(200, json=attestation.to_dict())

    return handler


def node_transport(nodes: dict, calls: dict = None) -> httpx.MockTransport:
    return httpx.MockTransport(node_handler(nodes, calls))


def counter_program(program_id, accounts, data, ctx):
    """Increments the u8 in its single writable account."""
    account = accounts[0]
    if not account.data:
        account.data.extend(b"\x00")
    account.data[0] = (account.data[0] + 1) % 256
    ctx.log("counter incremented")
