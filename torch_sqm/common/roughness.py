"""
Roughness Weighting & Aggregation
=================================

Author:
    Stefano Giacomelli - Ph.D. candidate @ DISIM dpt. - University of L'Aquila

License:
    GNU General Public License v3.0 or later (GPLv3+)

Perceptual stages of the ECMA-418-2 roughness model that follow the modulation
peak analysis:

1. **HighRateWeighting**: band scaling and high modulation-rate weighting of
   peak amplitudes
2. **HarmonicGrouping**: harmonic-complex grouping and fundamental modulation
   rate estimation per block and band
3. **LowRateWeighting**: low modulation-rate weighting of the dominant complex
4. **SpecificRoughnessTransform**: interpolation to the 50 Hz output grid,
   band-spread exponent and calibration
5. **RoughnessLowPass**: asymmetric rise/fall smoothing
6. **binaural_roughness**: combination of the two ears

The weighting curves share the band-pass shape

.. math::
    G(f) = \left[1 + \left(\left(\frac{f}{f_{max}} - \frac{f_{max}}{f}\right) q_1\right)^2\right]^{-q_2}

centred on the per-band modulation rate of maximum roughness

.. math::
    f_{max}(z) = 72.6937 \left(1 - 1.1739 \, e^{-5.4583 F(z) / 1000}\right)

References
----------
.. [1] ECMA International, "ECMA-418-2: Psychoacoustic metrics for ITT equipment -
       Part 2 (models based on human perception)," 2nd ed., Geneva, 2024.

.. [2] R. Sottek, "Modelle zur Signalverarbeitung im menschlichen Gehör,"
       PhD thesis, RWTH Aachen University, 1993.
"""

import math
from typing import Tuple

import torch
import torch.nn as nn

from .filterbanks import BAND_CENTRE_FREQS
from .filters import torch_pchip_interp
from .modulation import RESOLUTION

# -------------------------------------------------- Data ----------------------------------------------------

FS_OUTPUT = 50            # output sampling rate (Hz)

# Band scaling parameters (r1, r2) below / above 1 kHz
ROUGH_SCALE_LOW = (0.3560, 0.8049)
ROUGH_SCALE_HIGH = (0.8024, 0.9333)

# High- and low-rate weighting parameters
HI_WEIGHT_Q1 = 1.2822
HI_WEIGHT_Q2 = 0.2471
LO_WEIGHT_Q1 = 0.7066

HARMONIC_TOLERANCE = 0.04
GRAVITY_EXPONENT = 0.749
AMPLITUDE_FLOOR = 0.074376

# Band-spread exponent and calibration
EXPONENT_LIMITS = (0.58449, 0.95555)
EXPONENT_SLOPE = 1.6407
EXPONENT_CENTRE = 2.5804
CAL_R = 0.0180909
CAL_RX = 1 / 1.0011565

EPS = torch.finfo(torch.float64).eps

# ------------------------------------------------- Utilities ------------------------------------------------

def rough_scale(fc: torch.Tensor) -> torch.Tensor:
    r"""
    Per-band roughness scaling factor.

    .. math::
        r(z) = \frac{1}{1 + r_1 \left|\log_2\left(F(z)/1000\right)\right|^{r_2}}

    with :math:`(r_1, r_2) = (0.3560, 0.8049)` below 1 kHz and
    :math:`(0.8024, 0.9333)` at or above 1 kHz.

    Parameters
    ----------
    fc : torch.Tensor
        Band centre frequencies in Hz.

    Returns
    -------
    torch.Tensor
        Scaling factors, same shape.
    """
    below = fc < 1000
    r1 = torch.where(below, torch.full_like(fc, ROUGH_SCALE_LOW[0]), torch.full_like(fc, ROUGH_SCALE_HIGH[0]))
    r2 = torch.where(below, torch.full_like(fc, ROUGH_SCALE_LOW[1]), torch.full_like(fc, ROUGH_SCALE_HIGH[1]))
    return 1 / (1 + r1 * torch.abs(torch.log2(fc / 1000)) ** r2)


def max_weight_rate(fc: torch.Tensor) -> torch.Tensor:
    """Modulation rate of maximum roughness weighting per band (Hz)."""
    return 72.6937 * (1 - 1.1739 * torch.exp(-5.4583 * fc / 1000))


def high_rate_params(fc: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Weighting parameters for modulation rates above the maximum-weight rate.

    Returns
    -------
    q1, q2 : torch.Tensor
        Parameters per band.
    """
    log_f = torch.log2(fc / 1000)
    q2 = torch.where(fc / 1000 >= 2 ** -3.4253,
                     HI_WEIGHT_Q2 + 0.0129 * (log_f + 3.4253) ** 2,
                     torch.full_like(fc, HI_WEIGHT_Q2))
    return torch.full_like(fc, HI_WEIGHT_Q1), q2


def low_rate_params(fc: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Weighting parameters for fundamental modulation rates.

    Returns
    -------
    q1, q2 : torch.Tensor
        Parameters per band.
    """
    return torch.full_like(fc, LO_WEIGHT_Q1), 1.0967 - 0.064 * torch.log2(fc / 1000)


def rate_weighting(rate: torch.Tensor,
                   f_max: torch.Tensor,
                   q1: torch.Tensor,
                   q2: torch.Tensor) -> torch.Tensor:
    r"""
    Band-pass modulation-rate weighting :math:`G(f)`.

    Non-positive rates yield a weight of zero.

    Parameters
    ----------
    rate : torch.Tensor
        Modulation rates in Hz, shape (..., Z).

    f_max, q1, q2 : torch.Tensor
        Curve parameters broadcastable to ``rate``.

    Returns
    -------
    torch.Tensor
        Weights in [0, 1], same shape as ``rate``.
    """
    positive = rate > 0
    safe = torch.where(positive, rate, torch.ones_like(rate))
    weight = 1 / (1 + ((safe / f_max - f_max / safe) * q1) ** 2) ** q2
    return torch.where(positive, weight, torch.zeros_like(weight))

# ------------------------------------------------ Weighting -------------------------------------------------

class HighRateWeighting(nn.Module):
    r"""
    Band scaling and high modulation-rate weighting of peak amplitudes.

    .. math::
        A_{hi}(i) = \begin{cases}
            0 & f_i \le \Delta f \\
            r(z) A_i \, G_{hi}(f_i) & f_i > f_{max}(z) \\
            r(z) A_i & \text{otherwise}
        \end{cases}

    Rates at or below the spectral resolution are not valid modulations.

    Shape
    -----
    - Input: amplitudes and rates :math:`(L, P, Z)`
    - Output: :math:`(L, P, Z)`
    """

    def __init__(self, resolution: float = RESOLUTION, dtype: torch.dtype = torch.float64):
        super().__init__()

        self.resolution = resolution
        fc = BAND_CENTRE_FREQS.to(dtype)
        q1, q2 = high_rate_params(fc)
        self.register_buffer('scale', rough_scale(fc))
        self.register_buffer('f_max', max_weight_rate(fc))
        self.register_buffer('q1', q1)
        self.register_buffer('q2', q2)

    def forward(self, amplitudes: torch.Tensor, rates: torch.Tensor) -> torch.Tensor:
        """
        Weight peak amplitudes.

        Parameters
        ----------
        amplitudes : torch.Tensor
            Peak amplitudes, shape (L, P, Z).

        rates : torch.Tensor
            Peak modulation rates in Hz, shape (L, P, Z).

        Returns
        -------
        torch.Tensor
            Weighted amplitudes, shape (L, P, Z).
        """
        weighted = amplitudes * self.scale
        weighted = torch.where(rates <= self.resolution, torch.zeros_like(weighted), weighted)

        weight = rate_weighting(rates, self.f_max, self.q1, self.q2)
        return torch.where(rates > self.f_max, weighted * weight, weighted)

    def extra_repr(self) -> str:
        """
        Extra representation string for module printing.

        Returns
        -------
        str
            String containing key module parameters.
        """
        return f"resolution={self.resolution:.4f} Hz, num_bands={len(self.scale)}"


class HarmonicGrouping(nn.Module):
    r"""
    Harmonic-complex grouping and fundamental modulation rate estimation.

    For every block and band the detected peaks (rate > 0) are tested as the
    reference of a harmonic complex:

    1. **Harmonic ratios**: :math:`R_j = \mathrm{round}(f_j / f_{ref})`
       (halves rounded away from zero).

    2. **Duplicate ratios**: among peaks sharing a ratio only the one with the
       smallest deviation :math:`|f_j / (R_j f_{ref}) - 1|` is kept (lowest
       index on ties).

    3. **Membership**: kept peaks with deviation below 0.04.

    4. **Dominant complex**: the reference whose members carry the largest
       summed weighted amplitude (first on ties). Its reference rate is the
       fundamental modulation rate.

    5. **Gravity weighting** of the member amplitudes:

       .. math::
           w_g = 1 + 0.1 \left| \frac{\sum_j f_j A_j}{\sum_j (A_j + \epsilon)} - f_{\hat{\imath}} \right|^{0.749}

       where :math:`\hat{\imath}` is the member with the largest amplitude.

    Blocks and bands without peaks yield a fundamental rate and amplitudes of 0.

    Parameters
    ----------
    tolerance : float, optional
        Relative deviation accepted for harmonic membership. Default: 0.04.

    Shape
    -----
    - Input: rates and weighted amplitudes :math:`(L, P, Z)`
    - Output: fundamental rate :math:`(L, Z)`, gravity-weighted member
      amplitudes :math:`(L, P, Z)`
    """

    def __init__(self, tolerance: float = HARMONIC_TOLERANCE, gravity_exponent: float = GRAVITY_EXPONENT):
        super().__init__()

        self.tolerance = tolerance
        self.gravity_exponent = gravity_exponent

    def forward(self, rates: torch.Tensor, amplitudes: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Select the dominant harmonic complex of every block and band.

        Parameters
        ----------
        rates : torch.Tensor
            Peak modulation rates in Hz, shape (L, P, Z). Empty slots are 0.

        amplitudes : torch.Tensor
            High-rate weighted peak amplitudes, shape (L, P, Z).

        Returns
        -------
        fundamental_rate : torch.Tensor
            Fundamental modulation rate in Hz, shape (L, Z).

        member_amplitudes : torch.Tensor
            Gravity-weighted amplitudes of the dominant complex (0 for other
            peaks), shape (L, P, Z).
        """
        n_blocks, n_peaks, n_bands = rates.shape

        # One row per (block, band) cell
        r = rates.permute(0, 2, 1).reshape(-1, n_peaks)         # (M, P)
        A = amplitudes.permute(0, 2, 1).reshape(-1, n_peaks)    # (M, P)
        valid = r > 0

        r_ref = r.unsqueeze(-1)                                 # (M, P_ref, 1)
        r_test = r.unsqueeze(-2)                                # (M, 1, P)
        pair_valid = valid.unsqueeze(-1) & valid.unsqueeze(-2)  # (M, P_ref, P)

        safe_ref = torch.where(valid, r, torch.ones_like(r)).unsqueeze(-1)
        ratio = torch.floor(r_test / safe_ref + 0.5)
        harmonic = pair_valid & (ratio > 0)
        safe_ratio = torch.where(harmonic, ratio, torch.ones_like(ratio))
        deviation = torch.where(harmonic,
                                torch.abs(r_test / (safe_ratio * safe_ref) - 1),
                                torch.full_like(ratio, math.inf))

        # Within each equal-ratio group keep the smallest deviation, lowest index first
        same_group = (ratio.unsqueeze(-1) == ratio.unsqueeze(-2)) & pair_valid.unsqueeze(-2)  # (M, P_ref, P, P')
        dev_j = deviation.unsqueeze(-1)
        dev_k = deviation.unsqueeze(-2)
        index = torch.arange(n_peaks, device=r.device)
        earlier = index.view(1, 1, 1, -1) < index.view(1, 1, -1, 1)
        beaten = same_group & ((dev_k < dev_j) | ((dev_k == dev_j) & earlier))
        selected = ~beaten.any(dim=-1)

        members = selected & pair_valid & (deviation < self.tolerance)

        energy = torch.sum(torch.where(members, A.unsqueeze(-2), torch.zeros_like(deviation)), dim=-1)
        energy = torch.where(valid, energy, torch.full_like(energy, -math.inf))
        i_ref = torch.argmax(energy, dim=-1, keepdim=True)      # (M, 1)

        has_peaks = valid.any(dim=-1)
        fundamental = torch.where(has_peaks, r.gather(-1, i_ref).squeeze(-1), torch.zeros_like(r[:, 0]))

        # Members of the dominant complex
        dominant = members.gather(1, i_ref.unsqueeze(-1).expand(-1, 1, n_peaks)).squeeze(1)  # (M, P)
        A_dom = torch.where(dominant, A, torch.zeros_like(A))

        i_peak = torch.argmax(torch.where(dominant, A, torch.full_like(A, -math.inf)), dim=-1, keepdim=True)
        rate_peak = r.gather(-1, i_peak).squeeze(-1)
        n_members = dominant.sum(dim=-1).to(r.dtype)
        centroid = torch.sum(r * A_dom, dim=-1) / (torch.sum(A_dom, dim=-1) + n_members * EPS)
        centroid = torch.where(n_members > 0, centroid, rate_peak)
        gravity = 1 + 0.1 * torch.abs(centroid - rate_peak) ** self.gravity_exponent

        member_amplitudes = gravity.unsqueeze(-1) * A_dom

        fundamental = fundamental.reshape(n_blocks, n_bands)
        member_amplitudes = member_amplitudes.reshape(n_blocks, n_bands, n_peaks).permute(0, 2, 1)

        return fundamental, member_amplitudes

    def extra_repr(self) -> str:
        """
        Extra representation string for module printing.

        Returns
        -------
        str
            String containing key module parameters.
        """
        return f"tolerance={self.tolerance}, gravity_exponent={self.gravity_exponent}"


class LowRateWeighting(nn.Module):
    r"""
    Low modulation-rate weighting of the dominant harmonic complex.

    .. math::
        A(l, z) = \begin{cases}
            0 & f_0 \le \Delta f \\
            \sum_i A_g(i) & f_0 > f_{max}(z) \\
            G_{lo}(f_0) \sum_i A_g(i) & \text{otherwise}
        \end{cases}

    with :math:`q_1 = 0.7066` and :math:`q_2(z) = 1.0967 - 0.064 \log_2(F(z)/1000)`.
    Amplitudes below 0.074376 are set to zero.

    Shape
    -----
    - Input: fundamental rate :math:`(L, Z)`, member amplitudes :math:`(L, P, Z)`
    - Output: :math:`(L, Z)`
    """

    def __init__(self,
                 resolution: float = RESOLUTION,
                 amplitude_floor: float = AMPLITUDE_FLOOR,
                 dtype: torch.dtype = torch.float64):
        super().__init__()

        self.resolution = resolution
        self.amplitude_floor = amplitude_floor
        fc = BAND_CENTRE_FREQS.to(dtype)
        q1, q2 = low_rate_params(fc)
        self.register_buffer('f_max', max_weight_rate(fc))
        self.register_buffer('q1', q1)
        self.register_buffer('q2', q2)

    def forward(self, fundamental_rate: torch.Tensor, member_amplitudes: torch.Tensor) -> torch.Tensor:
        """
        Collapse the dominant complex into one amplitude per block and band.

        Parameters
        ----------
        fundamental_rate : torch.Tensor
            Fundamental modulation rate in Hz, shape (L, Z).

        member_amplitudes : torch.Tensor
            Gravity-weighted member amplitudes, shape (L, P, Z).

        Returns
        -------
        torch.Tensor
            Weighted modulation amplitude, shape (L, Z).
        """
        total = torch.sum(member_amplitudes, dim=1)
        weight = rate_weighting(fundamental_rate, self.f_max, self.q1, self.q2)

        amplitude = weight * total
        amplitude = torch.where(fundamental_rate <= self.resolution, torch.zeros_like(amplitude), amplitude)
        amplitude = torch.where(fundamental_rate > self.f_max, total, amplitude)

        return torch.where(amplitude < self.amplitude_floor, torch.zeros_like(amplitude), amplitude)

    def extra_repr(self) -> str:
        """
        Extra representation string for module printing.

        Returns
        -------
        str
            String containing key module parameters.
        """
        return f"resolution={self.resolution:.4f} Hz, amplitude_floor={self.amplitude_floor}"

# ---------------------------------------------- Aggregation -------------------------------------------------

class SpecificRoughnessTransform(nn.Module):
    r"""
    Interpolation to the output grid and nonlinear roughness transform.

    Algorithm Overview
    ------------------
    1. **Interpolation** of the block-wise amplitudes onto a uniform 50 Hz grid
       with shape-preserving cubic interpolation (PCHIP); negative overshoots
       are clipped to 0.

    2. **Band-spread exponent** from the ratio of RMS to mean over bands,
       :math:`B(t) = \mathrm{rms}_z / \mathrm{mean}_z` (0 for silent frames):

       .. math::
           E(t) = (0.95555 - 0.58449) \frac{\tanh(1.6407 (B(t) - 2.5804)) + 1}{2} + 0.58449

    3. **Calibrated transform**:

       .. math::
           R'_{est}(t, z) = c_R \, c_{R,x} \, A(t, z)^{E(t)}

    Shape
    -----
    - Input: amplitudes :math:`(L, Z)`, block times :math:`(L,)`, query times :math:`(T,)`
    - Output: :math:`(T, Z)`
    """

    def __init__(self, calibration: float = CAL_R * CAL_RX):
        super().__init__()

        self.calibration = calibration

    def band_spread_exponent(self, x: torch.Tensor) -> torch.Tensor:
        """
        Exponent of the roughness transform per time sample.

        Parameters
        ----------
        x : torch.Tensor
            Interpolated amplitudes, shape (T, Z).

        Returns
        -------
        torch.Tensor
            Exponents, shape (T,).
        """
        rms = torch.sqrt(torch.mean(x ** 2, dim=-1))
        mean = torch.mean(x, dim=-1)
        nonzero = mean != 0
        spread = torch.where(nonzero, rms / torch.where(nonzero, mean, torch.ones_like(mean)), torch.zeros_like(mean))

        e_lo, e_hi = EXPONENT_LIMITS
        return (e_hi - e_lo) * (torch.tanh(EXPONENT_SLOPE * (spread - EXPONENT_CENTRE)) + 1) * 0.5 + e_lo

    def forward(self,
                amplitudes: torch.Tensor,
                block_times: torch.Tensor,
                query_times: torch.Tensor) -> torch.Tensor:
        """
        Interpolate and transform block amplitudes.

        Parameters
        ----------
        amplitudes : torch.Tensor
            Weighted modulation amplitudes, shape (L, Z).

        block_times : torch.Tensor
            Time of every block in seconds, shape (L,), increasing.

        query_times : torch.Tensor
            Output time grid in seconds, shape (T,).

        Returns
        -------
        torch.Tensor
            Specific roughness before smoothing, shape (T, Z).
        """
        if block_times.numel() == 1:
            interpolated = amplitudes.expand(query_times.numel(), -1).clone()
        else:
            interpolated = torch_pchip_interp(block_times.to(amplitudes.dtype),
                                              amplitudes,
                                              query_times.to(amplitudes.dtype))
        interpolated = torch.clamp(interpolated, min=0)

        exponent = self.band_spread_exponent(interpolated)
        return self.calibration * interpolated ** exponent.unsqueeze(-1)

    def extra_repr(self) -> str:
        """
        Extra representation string for module printing.

        Returns
        -------
        str
            String containing key module parameters.
        """
        return f"calibration={self.calibration:.7f}"


class RoughnessLowPass(nn.Module):
    r"""
    Asymmetric first-order low-pass smoothing of specific roughness.

    .. math::
        y(t) = \begin{cases}
            x(t) (1 - \alpha_{rise}) + y(t-1) \alpha_{rise} & x(t) \ge y(t-1) \\
            x(t) (1 - \alpha_{fall}) + y(t-1) \alpha_{fall} & x(t) < y(t-1)
        \end{cases}

    with :math:`\alpha = e^{-1/(f_s \tau)}` and :math:`y(0) = x(0)`.

    Parameters
    ----------
    fs : float, optional
        Sampling rate of the time series in Hz. Default: 50.

    rise_time : float, optional
        Rise time constant in seconds. Default: 0.0625.

    fall_time : float, optional
        Fall time constant in seconds. Default: 0.5.

    Shape
    -----
    - Input: :math:`(T, ...)`
    - Output: :math:`(T, ...)`
    """

    def __init__(self, fs: float = FS_OUTPUT, rise_time: float = 0.0625, fall_time: float = 0.5):
        super().__init__()

        if rise_time <= 0 or fall_time <= 0:
            raise ValueError(f"rise_time and fall_time must be positive, got {rise_time} and {fall_time}")

        self.fs = fs
        self.rise_time = rise_time
        self.fall_time = fall_time
        self.rise_alpha = math.exp(-1 / (fs * rise_time))
        self.fall_alpha = math.exp(-1 / (fs * fall_time))

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Smooth along the first (time) dimension.

        Parameters
        ----------
        x : torch.Tensor
            Time series, shape (T, ...).

        Returns
        -------
        torch.Tensor
            Smoothed series, same shape.
        """
        output = torch.empty_like(x)
        if x.shape[0] == 0:
            return output

        state = x[0]
        output[0] = state

        for t in range(1, x.shape[0]):
            x_t = x[t]
            rise = x_t * (1 - self.rise_alpha) + state * self.rise_alpha
            fall = x_t * (1 - self.fall_alpha) + state * self.fall_alpha
            state = torch.where(x_t >= state, rise, fall)
            output[t] = state

        return output

    def get_parameters(self) -> dict:
        """
        Get filter parameters.

        Returns
        -------
        dict
            Time constants and smoothing coefficients.
        """
        return {'fs': self.fs,
                'rise_time': self.rise_time,
                'fall_time': self.fall_time,
                'rise_alpha': self.rise_alpha,
                'fall_alpha': self.fall_alpha}

    def extra_repr(self) -> str:
        """
        Extra representation string for module printing.

        Returns
        -------
        str
            String containing key module parameters.
        """
        return f"fs={self.fs}, rise_time={self.rise_time}, fall_time={self.fall_time}"


def binaural_roughness(left: torch.Tensor, right: torch.Tensor) -> torch.Tensor:
    r"""
    Combine left and right ear specific roughness.

    .. math::
        R'_{bin} = \sqrt{\frac{R'^2_{left} + R'^2_{right}}{2}}

    Parameters
    ----------
    left, right : torch.Tensor
        Specific roughness of each ear, same shape.

    Returns
    -------
    torch.Tensor
        Binaural specific roughness.
    """
    if left.shape != right.shape:
        raise ValueError(f"Left and right shapes differ: {tuple(left.shape)} vs {tuple(right.shape)}")
    return torch.sqrt((left ** 2 + right ** 2) / 2)
