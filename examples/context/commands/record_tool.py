import json
import os
import sys
from pathlib import Path

payload = json.load(sys.stdin)
# The pipeline passes the binding's declared output_path
log = Path(os.environ["CTXHOOK_OUTPUT_PATH"])
log.parent.mkdir(parents=True, exist_ok=True)
with open(log, "a") as f:
    f.write(json.dumps({"tool": payload.get("tool_name"), "success": payload.get("success")}) + "\n")
