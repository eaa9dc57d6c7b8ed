"""Allow running the package as ``python -m gpusidecar``.

Delegates to :func:`gpusidecar.cli.main`.
"""

from .cli import main

if __name__ == "__main__":
    raise SystemExit(main())
