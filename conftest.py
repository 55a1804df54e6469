"""
Global pytest configuration for agentloop.
"""


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "asyncio: mark test as an asyncio coroutine")
    config.addinivalue_line(
        "markers", "integration: marks tests that spawn real subprocesses or git"
    )
