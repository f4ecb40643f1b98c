"""
Toolgate - Policy enforcement for AI agent tool invocations.

Toolgate sits between an agent and the tools it calls. Every invocation is
checked against per-argument rules and is then allowed, denied, or held for
human confirmation before anything reaches the tool provider.
It provides:
- Flat per-argument rules grouped under tool policies
- Most-restrictive-wins resolution (deny > require_confirmation > allow)
- Human confirmation with timeouts
- Full audit history in SQLite

Example usage:
    $ toolgate policy import policies.yaml
    $ toolgate evaluate fs.read --arg path=/etc/passwd
    $ toolgate history
"""

__version__ = "0.1.0"
__author__ = "Toolgate Contributors"

__all__ = [
    "__version__",
    "__author__",
]
