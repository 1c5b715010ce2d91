"""Stand-in for the SEO worker binary, driven by the requested tool name.

Speaks newline-delimited JSON-RPC on stdio like the real worker.
"""

import json
import os
import signal
import sys
import time


def send(msg):
    sys.stdout.write(json.dumps(msg) + "\n")
    sys.stdout.flush()


def text_result(req_id, text):
    send({"jsonrpc": "2.0", "id": req_id, "result": {"content": [{"type": "text", "text": text}]}})


def error(req_id, message, data=None):
    err = {"code": -32000, "message": message}
    if data is not None:
        err["data"] = data
    send({"jsonrpc": "2.0", "id": req_id, "error": err})


def handle_call(req_id, name, args):
    if args.get("pid_file"):
        with open(args["pid_file"], "w") as fh:
            fh.write(str(os.getpid()))

    if name == "echo":
        config_path = os.environ.get("SEO_MCP_CONFIG", "")
        with open(config_path) as fh:
            config_text = fh.read()
        sa_path = ""
        for line in config_text.splitlines():
            if line.startswith("google_service_account"):
                sa_path = line.split("=", 1)[1].strip().strip('"')
        with open(sa_path) as fh:
            sa = json.load(fh)
        payload = {
            "config_path": config_path,
            "config": config_text,
            "service_account": sa,
            "rust_log": os.environ.get("RUST_LOG"),
            "arguments": args,
        }
        text_result(req_id, json.dumps(payload))
    elif name == "report":
        text_result(req_id, "SEO Report\nHealth Score: 87\n12 pages crawled\n3 issues found")
    elif name == "noisy":
        sys.stdout.write("INFO starting crawl\n")
        send({"jsonrpc": "2.0", "id": "someone-else", "result": {}})
        sys.stdout.write("[1, 2, 3]\n")
        text_result(req_id, "done")
    elif name == "forbidden":
        error(req_id, "Google API returned 403 Forbidden")
    elif name == "expired":
        error(req_id, "Token refresh failed", "invalid_grant: Token has been expired or revoked")
    elif name == "bad_input":
        error(req_id, "Invalid site_url parameter")
    elif name == "boom":
        error(req_id, "Something odd happened")
    elif name == "sleep":
        time.sleep(60)
    elif name == "stubborn":
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
        time.sleep(60)
    elif name == "crash":
        sys.stderr.write("panicked at src/main.rs\n")
        sys.stderr.flush()
        os._exit(3)
    else:
        text_result(req_id, json.dumps({"tool": name, "arguments": args}))


def main():
    if os.environ.get("RUST_LOG") == "init-fail":
        for line in sys.stdin:
            msg = json.loads(line)
            if msg.get("method") == "initialize":
                error(msg["id"], "bad config")
        return

    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        msg = json.loads(line)
        method = msg.get("method")
        if method == "initialize":
            send(
                {
                    "jsonrpc": "2.0",
                    "id": msg["id"],
                    "result": {"protocolVersion": msg["params"]["protocolVersion"], "capabilities": {}},
                }
            )
        elif method == "tools/call":
            params = msg.get("params") or {}
            handle_call(msg["id"], params.get("name"), params.get("arguments") or {})


if __name__ == "__main__":
    main()
