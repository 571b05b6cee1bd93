"""
Modulation Spectral Analysis
============================

Author:
    Stefano Giacomelli - Ph.D. candidate @ DISIM dpt. - University of L'Aquila

License:
    GNU General Public License v3.0 or later (GPLv3+)

This module implements the modulation analysis stages of the ECMA-418-2
roughness model. Envelope blocks of every half-Bark band are turned into
loudness-scaled modulation power spectra, smoothed across neighbouring bands
("noise reduction"), weighted by a spectral clipping curve, and searched for
modulation peaks whose rates are refined by parabolic interpolation and a
tabulated bias correction.

Tensors are laid out as ``(block, bin, band)`` (spectra) and
``(block, peak_slot, band)`` (peaks).

References
----------
.. [1] ECMA International, "ECMA-418-2: Psychoacoustic metrics for ITT equipment -
       Part 2 (models based on human perception)," 2nd ed., Geneva, 2024.

.. [2] R. Sottek, "Modelle zur Signalverarbeitung im menschlichen Gehör,"
       PhD thesis, RWTH Aachen University, 1993.
"""

import math
from typing import Literal, Tuple

import numpy as np
import torch
import torch.nn as nn
from scipy import signal as scipy_signal

# -------------------------------------------------- Data ----------------------------------------------------

FS_ENVELOPE = 1500        # envelope sampling rate (Hz)
N_ENVELOPE = 512          # envelope block length (samples)
RESOLUTION = FS_ENVELOPE / N_ENVELOPE   # modulation frequency resolution (Hz)

MAX_PEAKS = 10
PEAK_THRESHOLD = 0.05
PEAK_SEARCH_RANGE = (2, 256)            # bins searched for peaks (end exclusive)

# Bias of the parabolic rate estimate over one bin, in 1/32 bin steps
_ERROR_CORRECTION_HALF = torch.tensor([
    0.0000, 0.0457, 0.0907, 0.1346, 0.1765, 0.2157, 0.2515, 0.2828, 0.3084,
    0.3269, 0.3364, 0.3348, 0.3188, 0.2844, 0.2259, 0.1351, 0.0000,
], dtype=torch.float64)
ERROR_CORRECTION = torch.cat([_ERROR_CORRECTION_HALF,
                              -_ERROR_CORRECTION_HALF[:-1].flip(0),
                              torch.zeros(1, dtype=torch.float64)])

AmplitudeSource = Literal['weighted', 'averaged']

# ------------------------------------------------- Utilities ------------------------------------------------

def band_moving_average(spectra: torch.Tensor) -> torch.Tensor:
    """
    Three-band moving average over the band dimension.

    The first and last band have only one neighbour and are left untouched.

    Parameters
    ----------
    spectra : torch.Tensor
        Spectra, shape (..., N_bands).

    Returns
    -------
    torch.Tensor
        Smoothed spectra, same shape.
    """
    averaged = spectra.clone()
    averaged[..., 1:-1] = (spectra[..., :-2] + spectra[..., 1:-1] + spectra[..., 2:]) / 3
    return averaged


def _pick_peaks(x: np.ndarray, max_peaks: int, threshold: float) -> np.ndarray:
    """
    Locate the dominant local maxima of a 1-D spectrum.

    Flat peaks are located at their first sample. When more than ``max_peaks``
    maxima exist the most prominent are kept (lower index first on equal
    prominence). Peaks not exceeding ``threshold`` times the highest kept peak
    are discarded.

    Returns
    -------
    np.ndarray
        Peak indices in ascending order.
    """
    peaks, properties = scipy_signal.find_peaks(x, plateau_size=1)
    if peaks.size == 0:
        return peaks

    locs = properties['left_edges']
    if locs.size > max_peaks:
        prominences = scipy_signal.peak_prominences(x, peaks)[0]
        keep = np.sort(np.argsort(-prominences, kind='stable')[:max_peaks])
        locs = locs[keep]

    heights = x[locs]
    return locs[heights > threshold * heights.max()]

# ------------------------------------------------ Spectrum --------------------------------------------------

class ModulationSpectrum(nn.Module):
    r"""
    Loudness-scaled modulation power spectra of band envelopes.

    Algorithm Overview
    ------------------
    1. **Windowing** with a periodic Hann window normalised to unit power:

       .. math::
           \hat{p}_E(i, l, z) = p_E(i, l, z) \frac{w_{hann}(i)}{\sqrt{0.375}}

    2. **Power spectrum**: :math:`|\mathrm{FFT}\{\hat{p}_E\}|^2` over the 512
       envelope samples.

    3. **Loudness scaling**:

       .. math::
           \Phi_E(k, l, z) = \frac{N'^2_{basis}(l, z)}
           {\max_{z'} N'_{basis}(l, z') \sum_i \hat{p}_E^2(i, l, z)}
           |\mathrm{FFT}\{\hat{p}_E\}(k)|^2

       Blocks with a zero denominator yield an all-zero spectrum.

    Parameters
    ----------
    n_envelope : int, optional
        Envelope block length. Default: 512.

    dtype : torch.dtype, optional
        Data type of the window. Default: ``torch.float64``.

    Shape
    -----
    - Input: envelopes :math:`(L, K, Z)`, basis loudness :math:`(L, Z)`
    - Output: :math:`(L, K, Z)`
    """

    def __init__(self, n_envelope: int = N_ENVELOPE, dtype: torch.dtype = torch.float64):
        super().__init__()

        self.n_envelope = n_envelope
        window = torch.hann_window(n_envelope, periodic=True, dtype=dtype) / math.sqrt(0.375)
        self.register_buffer('window', window)

    def forward(self, envelopes: torch.Tensor, basis_loudness: torch.Tensor) -> torch.Tensor:
        """
        Compute scaled modulation power spectra.

        Parameters
        ----------
        envelopes : torch.Tensor
            Downsampled envelopes, shape (L, 512, Z).

        basis_loudness : torch.Tensor
            Basis loudness per block and band, shape (L, Z).

        Returns
        -------
        torch.Tensor
            Modulation power spectra, shape (L, 512, Z).
        """
        if envelopes.shape[1] != self.n_envelope:
            raise ValueError(f"Expected {self.n_envelope} envelope samples on dim 1, got {envelopes.shape[1]}")

        window = self.window.to(device=envelopes.device, dtype=envelopes.dtype)
        env_win = envelopes * window[None, :, None]

        power = torch.abs(torch.fft.fft(env_win, dim=1)) ** 2
        energy = torch.sum(env_win ** 2, dim=1)                                 # (L, Z)
        max_loudness = torch.max(basis_loudness, dim=-1, keepdim=True).values   # (L, 1)
        denominator = max_loudness * energy

        nonzero = denominator != 0
        safe_denominator = torch.where(nonzero, denominator, torch.ones_like(denominator))
        scaling = torch.where(nonzero, basis_loudness ** 2 / safe_denominator, torch.zeros_like(denominator))

        return scaling[:, None, :] * power

    def extra_repr(self) -> str:
        """
        Extra representation string for module printing.

        Returns
        -------
        str
            String containing key module parameters.
        """
        return f"n_envelope={self.n_envelope}, resolution={FS_ENVELOPE / self.n_envelope:.4f} Hz"


class ModulationNoiseReduction(nn.Module):
    r"""
    Cross-band noise reduction and spectral clipping weight.

    Algorithm Overview
    ------------------
    1. **Band averaging**: every band except the first and last is replaced by
       the mean of itself and its two neighbours, :math:`\bar{\Phi}_E`.

    2. **Clipping weight** from the band sum :math:`s(l, k) = \sum_z \bar{\Phi}_E(k, l, z)`:

       .. math::
           \Phi_{clip}(l, k) = 0.0856 \frac{s(l, k)}{\mathrm{median}_{2 \le k' \le 255} s(l, k') + 10^{-10}}
           \min\left(0.1891 e^{0.012 k}, 1\right), \quad k = 0, \dots, 256

    3. **Weighting factor**:

       .. math::
           w(l, k) = \begin{cases}
               \min(\max(\Phi_{clip} - 0.1407, 0), 1) & \Phi_{clip} \ge 0.05 \max_{2 \le k' \le 255} \Phi_{clip} \\
               0 & \text{otherwise}
           \end{cases}

       mirrored onto the upper half of the spectrum.

    4. **Weighted spectrum**: :math:`\hat{\Phi}_E = \bar{\Phi}_E \, w`.

    Shape
    -----
    - Input: :math:`(L, 512, Z)`
    - Output: averaged :math:`(L, 512, Z)`, weighted :math:`(L, 512, Z)`,
      weighting :math:`(L, 512)`
    """

    def __init__(self,
                 clip_gain: float = 0.0856,
                 clip_offset: float = 0.1407,
                 relative_threshold: float = 0.05,
                 decay_gain: float = 0.1891,
                 decay_rate: float = 0.012):
        super().__init__()

        self.clip_gain = clip_gain
        self.clip_offset = clip_offset
        self.relative_threshold = relative_threshold
        self.decay_gain = decay_gain
        self.decay_rate = decay_rate

    def forward(self, spectra: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """
        Apply band averaging and clipping weight.

        Parameters
        ----------
        spectra : torch.Tensor
            Modulation power spectra, shape (L, K, Z) with even K.

        Returns
        -------
        averaged : torch.Tensor
            Band-averaged spectra, shape (L, K, Z).

        weighted : torch.Tensor
            Band-averaged spectra multiplied by the weighting, shape (L, K, Z).

        weighting : torch.Tensor
            Weighting factor per block and bin, shape (L, K).
        """
        n_bins = spectra.shape[1]
        half = n_bins // 2
        lo, hi = PEAK_SEARCH_RANGE[0], half

        averaged = band_moving_average(spectra)
        band_sum = torch.sum(averaged, dim=-1)                                  # (L, K)

        k = torch.arange(half + 1, device=spectra.device, dtype=spectra.dtype)
        decay = torch.clamp(self.decay_gain * torch.exp(self.decay_rate * k), 0, 1)
        median = torch.quantile(band_sum[:, lo:hi], 0.5, dim=-1, keepdim=True)
        clip_weight = self.clip_gain * band_sum[:, :half + 1] / (median + 1e-10) * decay

        limit = self.relative_threshold * torch.max(clip_weight[:, lo:hi], dim=-1, keepdim=True).values
        weight_half = torch.where(clip_weight >= limit,
                                  torch.clamp(clip_weight - self.clip_offset, 0, 1),
                                  torch.zeros_like(clip_weight))
        weighting = torch.cat([weight_half, weight_half[:, 1:half].flip(-1)], dim=-1)

        return averaged, averaged * weighting[..., None], weighting

    def extra_repr(self) -> str:
        """
        Extra representation string for module printing.

        Returns
        -------
        str
            String containing key module parameters.
        """
        return (f"clip_gain={self.clip_gain}, clip_offset={self.clip_offset}, "
                f"relative_threshold={self.relative_threshold}")

# ---------------------------------------------- Peak Picking ------------------------------------------------

class ModulationPeakPicker(nn.Module):
    r"""
    Modulation peak detection and rate refinement.

    Algorithm Overview
    ------------------
    1. **Peak search** in the weighted spectrum :math:`\hat{\Phi}_E` over bins
       2-255 (``scipy.signal.find_peaks``). At most 10 peaks are kept, chosen by
       prominence, and peaks not above 5 % of the largest are discarded.

    2. **Peak amplitude**: sum of the three bins around the peak,

       .. math::
           A_i = \sum_{k = k_i - 1}^{k_i + 1} \hat{\Phi}_E(k)

    3. **Parabolic rate estimate** through the peak bin and its neighbours,
       solving :math:`\mathbf{K} \mathbf{C} = \hat{\Phi}_E(k_i - 1 : k_i + 1)`
       with rows :math:`[k^2, k, 1]`:

       .. math::
           \tilde{f}_i = -\frac{C_1}{2 C_0} \Delta f, \quad \Delta f = 1500/512 \text{ Hz}

    4. **Bias correction** from the tabulated error curve :math:`E(\theta)`:

       .. math::
           \beta(\theta) = \left(\left\lfloor \tilde{f}/\Delta f \right\rfloor + \frac{\theta}{32}\right)\Delta f
                           - \left(\tilde{f} + E(\theta)\right), \quad \theta = 0, \dots, 32

       The offset :math:`\theta_{min}` minimising :math:`|\beta|` is moved to the
       upper end of the sign change (:math:`\theta_c`) and the bias is linearly
       interpolated between table entries :math:`\theta_c - 1` and :math:`\theta_c`:

       .. math::
           \rho = E(\theta_c - 1) - \frac{E(\theta_c) - E(\theta_c - 1)}{\beta(\theta_c) - \beta(\theta_c - 1)}
                  \beta(\theta_c - 1), \quad f_i = \tilde{f}_i + \rho

    Parameters
    ----------
    max_peaks : int, optional
        Maximum number of peaks per block and band. Default: 10.

    threshold : float, optional
        Relative peak height threshold. Default: 0.05.

    amplitude_source : {'weighted', 'averaged'}, optional
        Spectrum summed for the peak amplitude: the clip-weighted spectrum the
        peaks were picked in, or the band-averaged spectrum before weighting.
        Default: ``'weighted'``.

    dtype : torch.dtype, optional
        Data type of the correction table. Default: ``torch.float64``.

    Shape
    -----
    - Input: weighted and averaged spectra :math:`(L, 512, Z)`
    - Output: amplitudes and rates :math:`(L, P, Z)` with :math:`P` = ``max_peaks``;
      unused slots are zero

    Notes
    -----
    Peak search runs through scipy and is not differentiable.
    """

    def __init__(self,
                 max_peaks: int = MAX_PEAKS,
                 threshold: float = PEAK_THRESHOLD,
                 amplitude_source: AmplitudeSource = 'weighted',
                 dtype: torch.dtype = torch.float64):
        super().__init__()

        if amplitude_source not in ('weighted', 'averaged'):
            raise ValueError(f"Invalid amplitude_source: {amplitude_source!r}. Use 'weighted' or 'averaged'.")
        if max_peaks < 1:
            raise ValueError(f"max_peaks must be >= 1, got {max_peaks}")

        self.max_peaks = max_peaks
        self.threshold = threshold
        self.amplitude_source = amplitude_source
        self.resolution = RESOLUTION

        self.register_buffer('error_correction', ERROR_CORRECTION.to(dtype))

    def find_peak_bins(self, weighted: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Locate modulation peaks in every block and band.

        Parameters
        ----------
        weighted : torch.Tensor
            Weighted modulation spectra, shape (L, K, Z).

        Returns
        -------
        bins : torch.Tensor
            Peak bin indices, int64, shape (L, P, Z). Unused slots hold 1.

        valid : torch.Tensor
            Mask of occupied slots, bool, shape (L, P, Z).
        """
        n_blocks, _, n_bands = weighted.shape
        lo, hi = PEAK_SEARCH_RANGE
        spectra = weighted.detach().cpu().numpy()

        bins = np.ones((n_blocks, self.max_peaks, n_bands), dtype=np.int64)
        valid = np.zeros((n_blocks, self.max_peaks, n_bands), dtype=bool)

        for l in range(n_blocks):
            for z in range(n_bands):
                locs = _pick_peaks(spectra[l, lo:hi, z], self.max_peaks, self.threshold) + lo
                bins[l, :locs.size, z] = locs
                valid[l, :locs.size, z] = True

        return torch.from_numpy(bins).to(weighted.device), torch.from_numpy(valid).to(weighted.device)

    def refine_rates(self, estimates: torch.Tensor) -> torch.Tensor:
        """
        Apply the tabulated bias correction to parabolic rate estimates.

        Parameters
        ----------
        estimates : torch.Tensor
            Raw rate estimates in Hz, shape (n,).

        Returns
        -------
        torch.Tensor
            Corrected rates in Hz, shape (n,).
        """
        res = self.resolution
        E = self.error_correction.to(device=estimates.device, dtype=estimates.dtype)
        theta = torch.arange(33, device=estimates.device, dtype=estimates.dtype)

        base = torch.floor(estimates / res).unsqueeze(-1)
        beta = (base + theta / 32) * res - (estimates.unsqueeze(-1) + E[:33])  # (n, 33)

        theta_min = torch.argmin(torch.abs(beta), dim=-1)
        beta_min = beta.gather(-1, theta_min.unsqueeze(-1)).squeeze(-1)
        beta_prev = beta.gather(-1, (theta_min - 1).clamp(min=0).unsqueeze(-1)).squeeze(-1)

        sign_change = (theta_min > 0) & (beta_min * beta_prev < 0)
        theta_corr = torch.where(sign_change, theta_min, theta_min + 1).clamp(max=32)

        beta_hi = beta.gather(-1, theta_corr.unsqueeze(-1)).squeeze(-1)
        beta_lo = beta.gather(-1, (theta_corr - 1).unsqueeze(-1)).squeeze(-1)
        E_hi = E[theta_corr]
        E_lo = E[theta_corr - 1]

        bias = E_lo - (E_hi - E_lo) * beta_lo / (beta_hi - beta_lo)

        return estimates + bias

    def forward(self, weighted: torch.Tensor, averaged: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Detect peaks and estimate their amplitudes and modulation rates.

        Parameters
        ----------
        weighted : torch.Tensor
            Weighted modulation spectra, shape (L, K, Z).

        averaged : torch.Tensor
            Band-averaged spectra before weighting, shape (L, K, Z).

        Returns
        -------
        amplitudes : torch.Tensor
            Peak amplitudes, shape (L, P, Z).

        rates : torch.Tensor
            Refined modulation rates in Hz, shape (L, P, Z).
        """
        bins, valid = self.find_peak_bins(weighted)

        source = weighted if self.amplitude_source == 'weighted' else averaged
        neighbours = [bins - 1, bins, bins + 1]

        amplitudes = sum(source.gather(1, idx) for idx in neighbours)
        amplitudes = torch.where(valid, amplitudes, torch.zeros_like(amplitudes))

        rates = torch.zeros_like(amplitudes)
        if valid.any():
            k = bins[valid].to(weighted.dtype)                                              # (n,)
            phi = torch.stack([weighted.gather(1, idx)[valid] for idx in neighbours], dim=-1)  # (n, 3)

            nodes = torch.stack([k - 1, k, k + 1], dim=-1)                                   # (n, 3)
            K = torch.stack([nodes ** 2, nodes, torch.ones_like(nodes)], dim=-1)             # (n, 3, 3)
            C = torch.linalg.solve(K, phi.unsqueeze(-1)).squeeze(-1)                          # (n, 3)

            estimates = -(C[:, 1] / (2 * C[:, 0])) * self.resolution
            rates[valid] = self.refine_rates(estimates)

        return amplitudes, rates

    def get_parameters(self) -> dict:
        """
        Get peak picking parameters.

        Returns
        -------
        dict
            Peak count, threshold, amplitude source and resolution.
        """
        return {
            'max_peaks': self.max_peaks,
            'threshold': self.threshold,
            'amplitude_source': self.amplitude_source,
            'resolution': self.resolution,
        }

    def extra_repr(self) -> str:
        """
        Extra representation string for module printing.

        Returns
        -------
        str
            String containing key module parameters.
        """
        return (f"max_peaks={self.max_peaks}, threshold={self.threshold}, "
                f"amplitude_source='{self.amplitude_source}', resolution={self.resolution:.4f} Hz")
