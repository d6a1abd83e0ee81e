#!/usr/bin/env python3
"""Post a generation outcome to /api/workflow/complete/.

Examples:
  python scripts/report_outcome.py \
    --url http://localhost:8000/api/workflow/complete/ \
    --job-id 42 --success --result-ref s3://episodes/42.json --cost 1.25 --handle run-42 \
    --token "$EPISODES_API_TOKEN"

  python scripts/report_outcome.py --url ... --job-id 42 --error "upstream timeout"

If --token is omitted, the API requires an authenticated Django session.
"""

from __future__ import annotations

import argparse
import json
import sys
import urllib.error
import urllib.request


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--url", required=True)
    parser.add_argument("--job-id", type=int, required=True)
    parser.add_argument("--success", action="store_true", default=False)
    parser.add_argument("--result-ref", default="")
    parser.add_argument("--error", default="")
    parser.add_argument("--cost", default="0")
    parser.add_argument("--handle", default="", help="Workflow run the outcome belongs to")
    parser.add_argument("--token", default="")
    args = parser.parse_args()

    if args.success and not args.result_ref:
        print("--result-ref is required with --success", file=sys.stderr)
        return 2

    body = json.dumps(
        {
            "job_id": args.job_id,
            "success": bool(args.success),
            "result_ref": args.result_ref,
            "error": args.error,
            "cost": args.cost,
            "handle": args.handle,
        }
    ).encode("utf-8")

    headers = {"Content-Type": "application/json"}
    if args.token:
        headers["X-Episodes-Token"] = args.token

    req = urllib.request.Request(args.url, data=body, headers=headers, method="POST")
    try:
        with urllib.request.urlopen(req, timeout=15) as resp:
            resp_body = resp.read()
            sys.stdout.buffer.write(resp_body)
            if resp_body and not resp_body.endswith(b"\n"):
                sys.stdout.write("\n")
            return 0
    except urllib.error.HTTPError as e:
        detail = e.read().decode("utf-8", errors="replace")
        print(f"HTTP {e.code}\n{detail}", file=sys.stderr)
        return 1
    except (urllib.error.URLError, OSError) as e:
        print(f"Request failed: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
