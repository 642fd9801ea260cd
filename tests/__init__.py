"""storesync test suite.

Unit tests live in tests/unit, one module per library module. HTTP is
served by ``httpx.MockTransport`` handlers; nothing touches the network.
"""
