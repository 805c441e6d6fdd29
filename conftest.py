"""
Global pytest configuration for the backlog runner.
"""


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "asyncio: mark test as an asyncio coroutine")
