import json
import re
import sys

DESTRUCTIVE = re.compile(r"rm\s+-rf\s+/|mkfs|dd\s+if=.*of=/dev/")

payload = json.load(sys.stdin)
if DESTRUCTIVE.search(payload.get("prompt", "")):
    print("Refusing a destructive command; ask again with a narrower target.", file=sys.stderr)
    sys.exit(2)
