"""
pytest configuration and fixtures for the KSY interpreter tests.

Provides:
- tools/ on sys.path so test modules import the interpreter directly
- Shared sample schemas and buffers
- Hypothesis property-based testing configuration
"""

import pytest
import sys
from pathlib import Path

# Add project paths
sys.path.insert(0, str(Path(__file__).parent.parent / "tools"))

# Configure Hypothesis profiles
try:
    from hypothesis import settings, Verbosity, Phase
    
    # Default profile: balanced speed and coverage
    settings.register_profile(
        "default",
        max_examples=100,
        deadline=None,  # Disable deadline for slow interpreters
    )
    
    # CI profile: more thorough testing
    settings.register_profile(
        "ci",
        max_examples=500,
        deadline=None,
        suppress_health_check=[],
        phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    )
    
    # Dev profile: fast iteration
    settings.register_profile(
        "dev",
        max_examples=10,
        deadline=None,
    )
    
    # Debug profile: verbose output
    settings.register_profile(
        "debug",
        max_examples=10,
        verbosity=Verbosity.verbose,
        deadline=None,
    )
    
    # Load profile from environment
    import os
    profile = os.environ.get("HYPOTHESIS_PROFILE", "default")
    settings.load_profile(profile)
    
except ImportError:
    pass  # Hypothesis not installed


SAMPLE_KSY = """
meta:
  id: sample
  endian: be
seq:
  - id: magic
    type: str
    size: 4
    encoding: ASCII
  - id: version
    type: u2
  - id: length
    type: u4
  - id: payload
    type: bytes
    size: length
"""

SAMPLE_BUFFER = b'TEST' + bytes([0x00, 0x01, 0x00, 0x00, 0x00, 0x03, 0xAA, 0xBB, 0xCC])


@pytest.fixture
def sample_ksy():
    """Header + length-prefixed payload schema, as YAML text."""
    return SAMPLE_KSY


@pytest.fixture
def sample_buffer():
    """Buffer matching sample_ksy: magic TEST, version 1, 3-byte payload."""
    return SAMPLE_BUFFER


# Markers for test categorization
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
