"""Entry point for `python -m scalewarden`.

Usage:
    python -m scalewarden
"""

from __future__ import annotations

import asyncio

from scalewarden.app import main

asyncio.run(main())
