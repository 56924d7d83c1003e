"""Core building blocks: configuration cascade, host resolution, templates and trimming."""

from __future__ import annotations
