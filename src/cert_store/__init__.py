"""
cert_store — local trust-store manager.

Keeps a directory of user-supplied X.509 certificates next to an upstream
(Mozilla) trust bundle and merges them into one combined PEM bundle that
package managers, HTTP clients and VCS tools can be pointed at.

Built on the Railway-Oriented Programming (ROP) framework for
explicit, composable, functional error handling.
"""

__version__ = "0.1.0"
