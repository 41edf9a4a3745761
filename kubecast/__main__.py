"""Entry point for `python -m kubecast`.

Usage:
    python -m kubecast
    KUBECAST_API_PORT=9000 python -m kubecast
"""

from __future__ import annotations

import asyncio

from kubecast.app import main

asyncio.run(main())
