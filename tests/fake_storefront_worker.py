"""Stand-in storefront worker used by the process manager tests.

Reads JSON-RPC requests line by line from stdin and answers on stdout.

Methods:
  ``hang``          never answers
  ``fail``          answers with a JSON-RPC error object
  ``noisy``         writes malformed lines before the real answer
  ``split``         writes its answer in two separate writes
  ``crash``         exits with code 3 without answering
  anything else     echoes the method, params and storefront env vars

Methods listed (comma separated) in ``FAKE_WORKER_SILENT`` never answer.
"""

import json
import os
import sys
import time

ENV_KEYS = (
    "WORDPRESS_SITE_URL",
    "WOOCOMMERCE_CONSUMER_KEY",
    "WOOCOMMERCE_CONSUMER_SECRET",
    "WORDPRESS_USERNAME",
    "WORDPRESS_PASSWORD",
)


def send(payload):
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


def main():
    silent = set(filter(None, os.environ.get("FAKE_WORKER_SILENT", "").split(",")))
    sys.stderr.write("fake storefront worker ready\n")
    sys.stderr.flush()

    for line in sys.stdin:
        request = json.loads(line)
        request_id = request["id"]
        method = request["method"]

        if method == "hang" or method in silent:
            continue
        if method == "crash":
            sys.exit(3)
        if method == "fail":
            send({"jsonrpc": "2.0", "id": request_id, "error": {"code": -32000, "message": "Product not found"}})
            continue
        if method == "noisy":
            sys.stdout.write("this is not json\n[1, 2, 3]\n\n")
            sys.stdout.flush()
        if method == "split":
            text = json.dumps({"jsonrpc": "2.0", "id": request_id, "result": {"split": True}}) + "\n"
            sys.stdout.write(text[:10])
            sys.stdout.flush()
            time.sleep(0.05)
            sys.stdout.write(text[10:])
            sys.stdout.flush()
            continue

        send({
            "jsonrpc": "2.0",
            "id": request_id,
            "result": {
                "method": method,
                "params": request.get("params"),
                "env": {key: os.environ.get(key) for key in ENV_KEYS},
            },
        })


if __name__ == "__main__":
    main()
