#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 actions-hub contributors
# SPDX-License-Identifier: Apache-2.0
"""Module entrypoint for `actions_hub`.

Usage:
  - `python3 -m actions_hub plan`
"""

from __future__ import annotations

from .cli import _cli


if __name__ == "__main__":
    raise SystemExit(_cli())
