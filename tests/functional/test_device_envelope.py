"""Device Compatibility Test Suite for envelope.py

This test suite verifies that the Hilbert envelope extraction in envelope.py
works correctly across the available devices (CPU, CUDA).

Contents:
- 1 nn.Module class: HilbertEnvelope

Usage:
    # Standalone execution (tests all available devices)
    python test_device_envelope.py

    # pytest execution
    pytest test_device_envelope.py -v
"""

import math

import pytest
import torch
from typing import List


# ================================================================================================
# Device Detection
# ================================================================================================

def get_available_devices() -> List[str]:
    """Detect PyTorch devices with float64 support.

    Returns
    -------
    list of str
        ['cpu'] or ['cpu', 'cuda']
    """
    devices = ['cpu']

    if torch.cuda.is_available():
        devices.append('cuda')

    return devices


# ================================================================================================
# Test: HilbertEnvelope
# ================================================================================================

@pytest.mark.parametrize("device", get_available_devices())
def test_hilbert_envelope_shape(device):
    """Blocks of 16384 samples give 512 envelope samples at 1500 Hz."""
    from torch_sqm.common.envelope import HilbertEnvelope

    print(f"\n{'='*80}")
    print(f"TEST: HilbertEnvelope - Device: {device.upper()}")
    print(f"{'='*80}\n")

    env = HilbertEnvelope().to(device)
    print(f"  Module: {env}")

    blocks = torch.randn(5, 16384, dtype=torch.float64, device=device)
    out = env(blocks)

    assert out.shape == (5, 512)
    assert out.device.type == device
    assert out.dtype == torch.float64
    assert torch.all(out >= 0)
    print(f"✓ Forward: {blocks.shape} -> {out.shape}")


@pytest.mark.parametrize("device", get_available_devices())
def test_hilbert_envelope_am_tone(device):
    """The envelope of an AM tone follows the modulator at the decimated instants."""
    from torch_sqm.common.envelope import HilbertEnvelope

    fs = 48000
    t = torch.arange(16384, dtype=torch.float64, device=device) / fs
    modulator = 1 + 0.8 * torch.cos(2 * math.pi * 70 * t)
    blocks = (modulator * torch.sin(2 * math.pi * 2000 * t)).unsqueeze(0)

    out = HilbertEnvelope()(blocks)[0]
    expected = modulator[::32]

    centre = slice(64, -64)
    assert torch.allclose(out[centre], expected[centre], atol=2e-2)
    print(f"✓ AM envelope: max error {torch.max(torch.abs(out - expected)[centre]):.2e}")


def test_hilbert_envelope_invalid_downsample():
    from torch_sqm.common.envelope import HilbertEnvelope

    with pytest.raises(ValueError):
        HilbertEnvelope(downsample=0)


# ================================================================================================
# Main Execution
# ================================================================================================

if __name__ == '__main__':
    """Run all tests when executed as standalone script."""

    print("\n" + "=" * 80)
    print("RUNNING ENVELOPE MODULE TESTS")
    print("=" * 80 + "\n")

    for device in get_available_devices():
        test_hilbert_envelope_shape(device)
        test_hilbert_envelope_am_tone(device)
    test_hilbert_envelope_invalid_downsample()

    print("\n" + "=" * 80)
    print("ALL TESTS COMPLETED SUCCESSFULLY ✓")
    print("=" * 80 + "\n")
