"""
ECMA418Roughness Complete Model - Test Suite

Tests the complete ECMA-418-2 roughness pipeline on amplitude-modulated tones,
with separate visualizations for each test scenario.

Test structure:
1. test_model_instantiation: Verifies all submodules
2. test_reference_signal: 1 kHz, 60 dB SPL, 100 % AM at 70 Hz (1 asper)
3. test_modulation_rate_dependency: roughness vs. modulation rate
4. test_modulation_depth_dependency: roughness vs. modulation depth
5. test_stereo_binaural: dichotic AM tone (modulated left ear only)

Figures generated:
- ecma418_2_reference_signal.png
- ecma418_2_modulation_rate.png
- ecma418_2_modulation_depth.png
- ecma418_2_stereo_binaural.png
"""

import math

import matplotlib.pyplot as plt
import numpy as np
import torch
from pathlib import Path

from torch_sqm.models.ecma418_2 import ECMA418Roughness


TEST_FIGURES_DIR = Path(__file__).parent.parent.parent / 'test_figures'


def am_tone(fs=48000, duration=1.5, fc=1000.0, fm=70.0, depth=1.0, level_db=60.0):
    """AM tone with an overall RMS level in dB SPL."""
    t = torch.arange(int(duration * fs), dtype=torch.float64) / fs
    x = (1 + depth * torch.sin(2 * math.pi * fm * t)) * torch.sin(2 * math.pi * fc * t)
    return x / torch.sqrt(torch.mean(x ** 2)) * 2e-5 * 10 ** (level_db / 20)


def test_model_instantiation():
    """Test 1: Model instantiation."""
    print("\n" + "="*80)
    print("TEST 1: MODEL INSTANTIATION")
    print("="*80)

    model = ECMA418Roughness(fs=48000)

    print(f"\nModel configuration:")
    for key, value in model.get_parameters().items():
        print(f"  {key}: {value}")

    print(f"\nSubmodules check:")
    modules = ['resampler', 'fade_pad', 'outer_middle_ear', 'filterbank', 'basis_loudness', 'envelope',
               'modulation_spectrum', 'noise_reduction', 'peak_picker', 'high_rate_weighting',
               'harmonic_grouping', 'low_rate_weighting', 'transform', 'lowpass']
    for mod in modules:
        assert hasattr(model, mod), mod
        print(f"  {mod}: ✓")

    print("\n✓ Model instantiated correctly with all submodules")


def test_reference_signal():
    """Test 2: Reference signal (1 kHz, 60 dB SPL, 100 % AM at 70 Hz) gives ~1 asper."""
    print("\n" + "="*80)
    print("TEST 2: REFERENCE SIGNAL (1 kHz, 60 dB SPL, fm = 70 Hz)")
    print("="*80)

    fs = 48000
    x = am_tone(fs=fs, duration=2.0)
    model = ECMA418Roughness(fs=fs, return_stages=True)
    result, stages = model(x)

    stats = result.stats
    print(f"\nRoughness values:")
    print(f"  Mean: {stats.mean.item():.3f} asper")
    print(f"  Max:  {stats.max.item():.3f} asper")
    print(f"  R10:  {stats.percentiles[10].item():.3f} asper")
    print(f"  R50:  {stats.median.item():.3f} asper")

    assert abs(stats.mean.item() - 1.0) < 0.2

    # Fundamental modulation rate near the carrier band
    z = int(torch.argmin(torch.abs(result.band_centre_freqs - 1000)))
    f0 = stages['fundamental_rate'][0][4:-4, z]          # blocks fully inside the signal
    print(f"  Fundamental rate (band {z}): {f0.mean().item():.2f} Hz")
    assert torch.all(torch.abs(f0 - 70) < 1.0)

    # === Visualization ===
    fig, axes = plt.subplots(3, 1, figsize=(12, 10))

    t_in = result.time_insig.numpy()
    n_show = int(0.05 * fs)
    axes[0].plot(t_in[:n_show], x.numpy()[:n_show], 'b-', linewidth=1.0)
    axes[0].set_xlabel('Time (s)')
    axes[0].set_ylabel('Sound pressure (Pa)')
    axes[0].set_title('Input: AM Tone (1 kHz, 60 dB SPL, fm = 70 Hz, m = 1)')
    axes[0].grid(True, alpha=0.3)

    axes[1].plot(result.time_out.numpy(), result.roughness_tdep.numpy(), 'b-', linewidth=1.5, label='R(t)')
    axes[1].axhline(stats.mean.item(), color='k', linestyle='--', linewidth=1, alpha=0.5,
                    label=f'Mean = {stats.mean.item():.3f}')
    axes[1].axvline(result.time_skip, color='r', linestyle=':', linewidth=1, label='Time skip')
    axes[1].set_xlabel('Time (s)')
    axes[1].set_ylabel('Roughness (asper)')
    axes[1].set_title('ECMA-418-2 Overall Roughness')
    axes[1].legend()
    axes[1].grid(True, alpha=0.3)

    im = axes[2].imshow(result.spec_roughness.numpy().T, aspect='auto', origin='lower',
                        extent=[0, result.time_out[-1].item(), 0.5, 26.5], cmap='viridis')
    axes[2].set_xlabel('Time (s)')
    axes[2].set_ylabel('Critical band rate (Bark)')
    axes[2].set_title('Specific Roughness')
    plt.colorbar(im, ax=axes[2], label='Roughness (asper/Bark)')

    plt.tight_layout()
    TEST_FIGURES_DIR.mkdir(parents=True, exist_ok=True)
    fig_path = TEST_FIGURES_DIR / 'ecma418_2_reference_signal.png'
    plt.savefig(fig_path, dpi=150, bbox_inches='tight')
    print(f"\n✓ Figure saved: {fig_path}")
    plt.close()


def test_modulation_rate_dependency():
    """Test 3: Roughness is band-pass in modulation rate, peaking near 70 Hz."""
    print("\n" + "="*80)
    print("TEST 3: MODULATION RATE DEPENDENCY (fc = 1 kHz)")
    print("="*80)

    model = ECMA418Roughness(fs=48000)
    rates = [10.0, 30.0, 50.0, 70.0, 100.0, 150.0]
    roughness = []

    for fm in rates:
        result = model(am_tone(fm=fm))
        roughness.append(result.stats.mean.item())
        print(f"  fm = {fm:5.1f} Hz -> R = {roughness[-1]:.3f} asper")

    i_max = int(np.argmax(roughness))
    assert rates[i_max] in (50.0, 70.0, 100.0)
    assert roughness[0] < roughness[i_max]
    assert roughness[-1] < roughness[i_max]

    fig, ax = plt.subplots(figsize=(8, 5))
    ax.plot(rates, roughness, 'bo-', linewidth=1.5)
    ax.set_xscale('log')
    ax.set_xlabel('Modulation rate (Hz)')
    ax.set_ylabel('Mean roughness (asper)')
    ax.set_title('Roughness vs. Modulation Rate (1 kHz carrier, 60 dB SPL)')
    ax.grid(True, which='both', alpha=0.3)

    plt.tight_layout()
    TEST_FIGURES_DIR.mkdir(parents=True, exist_ok=True)
    fig_path = TEST_FIGURES_DIR / 'ecma418_2_modulation_rate.png'
    plt.savefig(fig_path, dpi=150, bbox_inches='tight')
    print(f"\n✓ Figure saved: {fig_path}")
    plt.close()


def test_modulation_depth_dependency():
    """Test 4: Roughness increases with modulation depth."""
    print("\n" + "="*80)
    print("TEST 4: MODULATION DEPTH DEPENDENCY (fm = 70 Hz)")
    print("="*80)

    model = ECMA418Roughness(fs=48000)
    depths = [0.0, 0.25, 0.5, 0.75, 1.0]
    roughness = []

    for m in depths:
        result = model(am_tone(depth=m))
        roughness.append(result.stats.mean.item())
        print(f"  m = {m:.2f} -> R = {roughness[-1]:.3f} asper")

    assert all(b >= a for a, b in zip(roughness[:-1], roughness[1:]))
    assert roughness[0] < 0.1

    fig, ax = plt.subplots(figsize=(8, 5))
    ax.plot(depths, roughness, 'ro-', linewidth=1.5)
    ax.set_xlabel('Modulation depth')
    ax.set_ylabel('Mean roughness (asper)')
    ax.set_title('Roughness vs. Modulation Depth (1 kHz carrier, fm = 70 Hz)')
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    TEST_FIGURES_DIR.mkdir(parents=True, exist_ok=True)
    fig_path = TEST_FIGURES_DIR / 'ecma418_2_modulation_depth.png'
    plt.savefig(fig_path, dpi=150, bbox_inches='tight')
    print(f"\n✓ Figure saved: {fig_path}")
    plt.close()


def test_stereo_binaural():
    """Test 5: Dichotic signal, modulated in the left ear only."""
    print("\n" + "="*80)
    print("TEST 5: STEREO / BINAURAL (AM left, pure tone right)")
    print("="*80)

    left = am_tone(depth=1.0)
    right = am_tone(depth=0.0)
    result = ECMA418Roughness(fs=48000)(torch.stack([left, right], dim=-1))

    mean_left, mean_right = result.stats.mean.tolist()
    mean_bin = result.stats_bin.mean.item()
    print(f"\n  Left:     {mean_left:.3f} asper")
    print(f"  Right:    {mean_right:.3f} asper")
    print(f"  Binaural: {mean_bin:.3f} asper")

    assert mean_left > mean_right
    assert mean_right <= mean_bin <= mean_left

    fig, ax = plt.subplots(figsize=(10, 5))
    t_out = result.time_out.numpy()
    ax.plot(t_out, result.roughness_tdep[:, 0].numpy(), 'b-', label='Left', linewidth=1.5)
    ax.plot(t_out, result.roughness_tdep[:, 1].numpy(), 'r-', label='Right', linewidth=1.5)
    ax.plot(t_out, result.roughness_tdep_bin.numpy(), 'k--', label='Binaural', linewidth=1.5)
    ax.set_xlabel('Time (s)')
    ax.set_ylabel('Roughness (asper)')
    ax.set_title('ECMA-418-2 Roughness: Dichotic AM Tone')
    ax.legend()
    ax.grid(True, alpha=0.3)

    plt.tight_layout()
    TEST_FIGURES_DIR.mkdir(parents=True, exist_ok=True)
    fig_path = TEST_FIGURES_DIR / 'ecma418_2_stereo_binaural.png'
    plt.savefig(fig_path, dpi=150, bbox_inches='tight')
    print(f"\n✓ Figure saved: {fig_path}")
    plt.close()


if __name__ == '__main__':
    test_model_instantiation()
    test_reference_signal()
    test_modulation_rate_dependency()
    test_modulation_depth_dependency()
    test_stereo_binaural()

    print("\n" + "="*80)
    print("ALL TESTS COMPLETED")
    print("="*80)
