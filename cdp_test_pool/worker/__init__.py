"""Remote worker runtime shipped as a package resource.

The runtime is plain JavaScript evaluated in the remote execution context.
The names below are shared by both sides of the transport.
"""

import json
from importlib import resources

RUNTIME_SOURCE_URL = "cdp-test-pool://worker-runtime.js"
RUNTIME_GLOBAL = "__cdpTestPoolWorker__"
RECEIVE_FUNCTION = "__cdpTestPoolReceive__"
BINDING_NAME = "__cdpTestPoolSend__"
MESSAGE_TAG = "__CDP_TEST_POOL_RPC__"
API_GLOBAL = "__cdpTestPoolApi__"

API_EXPORTS = (
    "describe",
    "suite",
    "it",
    "test",
    "beforeAll",
    "afterAll",
    "beforeEach",
    "afterEach",
    "expect",
    "onTestFinished",
    "onTestFailed",
)

OPTIONS_PLACEHOLDER = "__RUNTIME_OPTIONS__"


def load_worker_runtime() -> str:
    """Return the runtime source ready to be evaluated remotely.

    Injecting twice into one context is a no-op on the remote side, the
    runtime checks its own global first.
    """
    source = resources.files(__name__).joinpath("runtime.js").read_text("utf-8")
    options = {
        "runtimeGlobal": RUNTIME_GLOBAL,
        "receiveFunction": RECEIVE_FUNCTION,
        "bindingName": BINDING_NAME,
        "messageTag": MESSAGE_TAG,
        "apiGlobal": API_GLOBAL,
    }
    source = source.replace(OPTIONS_PLACEHOLDER, json.dumps(options))
    return f"{source}\n//# sourceURL={RUNTIME_SOURCE_URL}\n"
