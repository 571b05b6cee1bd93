"""
HalfBarkFilterbank - Frequency Response Analysis

Computes and plots the magnitude responses of the 53 half-Bark auditory
filters (ECMA-418-2) together with the outer & middle ear transfer functions.

Figures generated:
- halfbark_filterbank_responses.png
- ecma418_2_ear_filters.png
"""

import matplotlib.pyplot as plt
import numpy as np
import torch
from pathlib import Path

from torch_sqm.common.ears import OuterMiddleEarFilter
from torch_sqm.common.filterbanks import HalfBarkFilterbank, critical_bandwidth


TEST_FIGURES_DIR = Path(__file__).parent.parent.parent / 'test_figures'


def test_halfbark_filterbank_responses():
    """Each filter peaks at its centre frequency with unity gain."""
    print("\n" + "="*80)
    print("HALF-BARK FILTERBANK FREQUENCY RESPONSES")
    print("="*80)

    fs = 48000
    fb = HalfBarkFilterbank()
    impulse = torch.zeros(fs, dtype=torch.float64)
    impulse[0] = 1.0

    h = fb(impulse).numpy()                         # (53, fs), 1 Hz resolution
    H = np.abs(np.fft.rfft(h, axis=-1))
    freqs = np.fft.rfftfreq(fs, 1 / fs)
    H_db = 20 * np.log10(np.maximum(H, 1e-12))

    fc = fb.fc.numpy()
    bw = critical_bandwidth(fb.fc).numpy()

    print(f"\n{'Band':>5} {'fc (Hz)':>10} {'Peak (Hz)':>10} {'Gain @ fc (dB)':>15}")
    for z in range(4, 53):
        k_fc = int(round(fc[z]))
        k_peak = int(np.argmax(H[z]))
        gain_db = H_db[z, k_fc]
        if z % 8 == 0:
            print(f"{z:5d} {fc[z]:10.1f} {freqs[k_peak]:10.1f} {gain_db:15.3f}")

        assert abs(gain_db) < 0.5, f"band {z}: {gain_db:.2f} dB at fc"
        assert abs(freqs[k_peak] - fc[z]) < 0.25 * bw[z], f"band {z}: peak at {freqs[k_peak]:.1f} Hz"

    # === Visualization ===
    fig, axes = plt.subplots(2, 1, figsize=(12, 9))

    for z in range(53):
        axes[0].semilogx(freqs[1:], H_db[z, 1:], linewidth=0.8)
    axes[0].set_xlim(20, 24000)
    axes[0].set_ylim(-60, 5)
    axes[0].set_xlabel('Frequency (Hz)')
    axes[0].set_ylabel('Magnitude (dB)')
    axes[0].set_title('Half-Bark Filterbank (53 bands, ECMA-418-2)')
    axes[0].grid(True, which='both', alpha=0.3)

    axes[1].semilogx(fc, bw, 'bo-', markersize=3, label='Critical bandwidth')
    axes[1].set_xlabel('Centre frequency (Hz)')
    axes[1].set_ylabel('Bandwidth (Hz)')
    axes[1].set_title('Critical Bandwidth vs. Centre Frequency')
    axes[1].legend()
    axes[1].grid(True, which='both', alpha=0.3)

    plt.tight_layout()
    TEST_FIGURES_DIR.mkdir(parents=True, exist_ok=True)
    fig_path = TEST_FIGURES_DIR / 'halfbark_filterbank_responses.png'
    plt.savefig(fig_path, dpi=150, bbox_inches='tight')
    print(f"\n✓ Figure saved: {fig_path}")
    plt.close()


def test_ear_filter_responses():
    """Free-frontal and diffuse-field outer & middle ear transfer functions."""
    print("\n" + "="*80)
    print("OUTER & MIDDLE EAR FILTERS")
    print("="*80)

    fig, ax = plt.subplots(figsize=(10, 5))
    for field_type, style in (('free-frontal', 'b-'), ('diffuse', 'r--')):
        ear = OuterMiddleEarFilter(field_type=field_type)
        freqs, response_db = ear.get_frequency_response(nfft=16384)
        freqs, response_db = freqs.numpy(), response_db.numpy()

        k_peak = int(np.argmax(response_db[freqs < 10000]))
        print(f"  {field_type:13s}: maximum {response_db[k_peak]:.1f} dB at {freqs[k_peak]:.0f} Hz")
        assert np.all(np.isfinite(response_db))
        assert 1500 < freqs[k_peak] < 6000           # ear canal resonance

        ax.semilogx(freqs[1:], response_db[1:], style, linewidth=1.5, label=field_type)

    ax.set_xlim(20, 20000)
    ax.set_xlabel('Frequency (Hz)')
    ax.set_ylabel('Magnitude (dB)')
    ax.set_title('ECMA-418-2 Outer & Middle Ear Filters')
    ax.legend()
    ax.grid(True, which='both', alpha=0.3)

    plt.tight_layout()
    TEST_FIGURES_DIR.mkdir(parents=True, exist_ok=True)
    fig_path = TEST_FIGURES_DIR / 'ecma418_2_ear_filters.png'
    plt.savefig(fig_path, dpi=150, bbox_inches='tight')
    print(f"\n✓ Figure saved: {fig_path}")
    plt.close()


if __name__ == '__main__':
    test_halfbark_filterbank_responses()
    test_ear_filter_responses()

    print("\n" + "="*80)
    print("ALL TESTS COMPLETED")
    print("="*80)
