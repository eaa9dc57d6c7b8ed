"""Example: run a command and print the GPU usage attributed to it.

Run:
  python examples/watch_command.py python train.py

The sidecar is started with the command's pid, and every record that
contains ``gpu.process.*`` keys is summarised on stderr.  Without a GPU
you will only see zero-device records.
"""

import json
import subprocess
import sys


def main(cmd):
    work = subprocess.Popen(cmd)
    sidecar = subprocess.Popen(
        [sys.executable, "-m", "gpusidecar", str(work.pid)],
        stdout=subprocess.PIPE,
        text=True,
    )
    try:
        for line in sidecar.stdout:
            if not line.startswith("{"):
                continue  # startup diagnostics
            record = json.loads(line)
            ours = {k: v for k, v in record.items() if k.startswith("gpu.process.")}
            if ours:
                print(json.dumps(ours, sort_keys=True), file=sys.stderr)
            if work.poll() is not None:
                break
    finally:
        sidecar.terminate()
        sidecar.wait()
    return work.wait()


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:] or ["sleep", "3"]))
