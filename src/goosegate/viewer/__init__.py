"""goosegate viewer package - HTTP gateway and live-reload preview hosting.

This package provides:
- server.py: Job API, preview static hosting with branch switcher injection
- broadcast.py: SSE fan-out used to reload open preview tabs after a publish
"""
