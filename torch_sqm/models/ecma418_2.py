"""
ECMA-418-2 Roughness Model
==========================

Author:
    Stefano Giacomelli - Ph.D. candidate @ DISIM dpt. - University of L'Aquila

License:
    GNU General Public License v3.0 or later (GPLv3+)

This module implements the roughness model of ECMA-418-2 (2nd edition, 2024),
based on the Sottek hearing model. A calibrated sound pressure signal (Pa) is
resampled to 48 kHz, filtered by the outer and middle ear, split into 53
half-Bark bands and analysed block-wise for envelope modulations. Modulation
peaks are grouped into harmonic complexes, perceptually weighted and turned
into time-dependent specific roughness (asper per Bark) at 50 Hz, overall
roughness (asper) and summary statistics.

Stereo signals are processed per ear and, optionally, combined into a binaural
roughness.

References
----------
.. [1] ECMA International, "ECMA-418-2: Psychoacoustic metrics for ITT equipment -
       Part 2 (models based on human perception)," 2nd ed., Geneva, 2024.

.. [2] R. Sottek, "Modelle zur Signalverarbeitung im menschlichen Gehör,"
       PhD thesis, RWTH Aachen University, 1993.

.. [3] M. Lotinga, G. Felix Greco and others, "SQAT: a sound quality analysis
       toolbox for MATLAB," 2024.
"""

import math
import warnings
from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Dict, Optional, Tuple, Union

import torch
import torch.nn as nn

from torch_sqm.common.ears import OuterMiddleEarFilter
from torch_sqm.common.envelope import HilbertEnvelope
from torch_sqm.common.filterbanks import BAND_CENTRE_FREQS, DZ, HalfBarkFilterbank
from torch_sqm.common.loudness import BasisLoudness
from torch_sqm.common.modulation import ModulationNoiseReduction, ModulationPeakPicker, ModulationSpectrum
from torch_sqm.common.preprocessing import (BLOCK_OVERLAP, BLOCK_SIZE, FADE_SAMPLES, FS_MODEL, HOP_SIZE,
                                            FadeInPadding, Resampler, num_blocks, segment_signal)
from torch_sqm.common.roughness import (FS_OUTPUT, HarmonicGrouping, HighRateWeighting, LowRateWeighting,
                                        RoughnessLowPass, SpecificRoughnessTransform, binaural_roughness)
from torch_sqm.common.stats import RoughnessStatistics, time_skip_index

Observer = Callable[[str, float], None]

MIN_DURATION = 0.3        # shortest accepted signal (s)

# ------------------------------------------------- Results --------------------------------------------------

@dataclass
class RoughnessResult:
    """
    Fields shared by every roughness result.

    Attributes
    ----------
    spec_roughness : torch.Tensor
        Time-dependent specific roughness (asper/Bark), shape (T_out, 53[, 2]).

    spec_roughness_avg : torch.Tensor
        Time-averaged specific roughness after the transient skip, shape (53[, 2]).

    roughness_tdep : torch.Tensor
        Time-dependent overall roughness (asper), shape (T_out[, 2]).

    band_centre_freqs : torch.Tensor
        Half-Bark band centre frequencies in Hz, shape (53,).

    time_out : torch.Tensor
        Output time axis in seconds (50 Hz), shape (T_out,).

    time_insig : torch.Tensor
        Input time axis in seconds, shape (T_in,).

    sound_field : str
        Field type the signal was analysed with.

    time_skip : float
        Transient window excluded from averages and statistics (s).

    stats : RoughnessStatistics
        Statistics of ``roughness_tdep`` (one value per channel).
    """

    spec_roughness: torch.Tensor
    spec_roughness_avg: torch.Tensor
    roughness_tdep: torch.Tensor
    band_centre_freqs: torch.Tensor
    time_out: torch.Tensor
    time_insig: torch.Tensor
    sound_field: str
    time_skip: float
    stats: RoughnessStatistics

    layout: ClassVar[str] = ''

    @property
    def n_channels(self) -> int:
        return 1 if self.roughness_tdep.ndim == 1 else self.roughness_tdep.shape[-1]


@dataclass
class MonoRoughness(RoughnessResult):
    """Roughness of a single-channel signal."""

    layout: ClassVar[str] = 'mono'


@dataclass
class StereoRoughness(RoughnessResult):
    """Roughness of a two-channel signal; the last dimension indexes [left, right]."""

    layout: ClassVar[str] = 'stereo'


@dataclass
class StereoWithBinauralRoughness(StereoRoughness):
    """
    Two-channel roughness with the combined binaural channel.

    Attributes
    ----------
    spec_roughness_bin : torch.Tensor
        Binaural specific roughness, shape (T_out, 53).

    spec_roughness_avg_bin : torch.Tensor
        Time-averaged binaural specific roughness, shape (53,).

    roughness_tdep_bin : torch.Tensor
        Binaural overall roughness, shape (T_out,).

    stats_bin : RoughnessStatistics
        Statistics of ``roughness_tdep_bin``.
    """

    spec_roughness_bin: torch.Tensor = field(default=None)
    spec_roughness_avg_bin: torch.Tensor = field(default=None)
    roughness_tdep_bin: torch.Tensor = field(default=None)
    stats_bin: RoughnessStatistics = field(default=None)

    layout: ClassVar[str] = 'stereo_binaural'

# -------------------------------------------------- Model ---------------------------------------------------

class ECMA418Roughness(nn.Module):
    r"""
    ECMA-418-2 roughness of mono or stereo sound pressure signals.

    Processing Stages
    -----------------
    1. **Pre-processing** (:class:`Resampler`, :class:`FadeInPadding`): resample
       to 48 kHz, 240-sample raised-cosine fade-in, one block of leading zeros.
    2. **Outer & middle ear** (:class:`OuterMiddleEarFilter`): free-frontal or
       diffuse field.
    3. **Auditory filterbank** (:class:`HalfBarkFilterbank`): 53 half-Bark bands.
    4. **Blocks**: 16384 samples, 75 % overlap.
    5. **Basis loudness** (:class:`BasisLoudness`) and **envelopes**
       (:class:`HilbertEnvelope`, 1500 Hz).
    6. **Modulation spectra** (:class:`ModulationSpectrum`) with cross-band
       noise reduction and clipping weight (:class:`ModulationNoiseReduction`).
    7. **Peaks** (:class:`ModulationPeakPicker`): up to 10 per block and band,
       rates refined by parabolic interpolation and bias correction.
    8. **High-rate weighting** (:class:`HighRateWeighting`), **harmonic
       grouping** (:class:`HarmonicGrouping`) and **low-rate weighting**
       (:class:`LowRateWeighting`).
    9. **Output**: PCHIP interpolation to 50 Hz and calibrated nonlinear
       transform (:class:`SpecificRoughnessTransform`), asymmetric low-pass
       (:class:`RoughnessLowPass`), band integration and statistics.

    Parameters
    ----------
    fs : int
        Sampling rate of the input signal in Hz (positive integer).

    field_type : {'free-frontal', 'diffuse'}, optional
        Sound field of the recording. Default: ``'free-frontal'``.

    time_skip : float, optional
        Initial transient window in seconds excluded from the time-averaged
        specific roughness and from the statistics. Default: 0.3.

    binaural : bool, optional
        For stereo input, also compute the combined binaural roughness.
        Default: True.

    return_stages : bool, optional
        If True, ``forward`` returns ``(result, stages)`` with intermediate
        block-wise quantities per channel. Default: False.

    observer : callable, optional
        Progress callback ``observer(stage, progress)`` called at stage
        boundaries with a progress fraction in [0, 1]. Default: None.

    dtype : torch.dtype, optional
        Computation dtype. Default: ``torch.float64``.

    ear_kwargs : dict, optional
        Extra arguments for :class:`OuterMiddleEarFilter`.

    peak_kwargs : dict, optional
        Extra arguments for :class:`ModulationPeakPicker` (e.g.
        ``amplitude_source``).

    lowpass_kwargs : dict, optional
        Extra arguments for :class:`RoughnessLowPass` (``rise_time``,
        ``fall_time``).

    Raises
    ------
    ValueError
        For an invalid sampling rate, field type or ``time_skip``; at call time
        for more than two channels or a signal not longer than 300 ms.

    TypeError
        If ``observer`` is not callable.

    Examples
    --------
    Reference roughness (1 kHz, 60 dB SPL, 100 % AM at 70 Hz ~ 1 asper):

    >>> import math
    >>> import torch
    >>> from torch_sqm import ECMA418Roughness
    >>>
    >>> fs = 48000
    >>> t = torch.arange(int(2.5 * fs), dtype=torch.float64) / fs
    >>> carrier = math.sqrt(2) * 2e-5 * 10 ** (60 / 20) * torch.sin(2 * math.pi * 1000 * t)
    >>> x = carrier * (1 + torch.sin(2 * math.pi * 70 * t)) / math.sqrt(1.5)
    >>> result = ECMA418Roughness(fs=fs)(x)
    >>> result.layout
    'mono'
    >>> float(result.stats.mean)  # doctest: +SKIP
    1.0

    Stereo input with binaural combination:

    >>> result = ECMA418Roughness(fs=fs)(torch.stack([x, x], dim=-1))
    >>> result.layout
    'stereo_binaural'
    >>> result.spec_roughness.shape[-1]
    2
    """

    def __init__(self,
                 fs: int,
                 field_type: str = 'free-frontal',
                 time_skip: float = MIN_DURATION,
                 binaural: bool = True,
                 return_stages: bool = False,
                 observer: Optional[Observer] = None,
                 dtype: torch.dtype = torch.float64,
                 ear_kwargs: Dict[str, Any] = None,
                 peak_kwargs: Dict[str, Any] = None,
                 lowpass_kwargs: Dict[str, Any] = None):
        super().__init__()

        if time_skip < 0:
            raise ValueError(f"time_skip must be >= 0, got {time_skip}")
        if observer is not None and not callable(observer):
            raise TypeError(f"observer must be callable, got {type(observer).__name__}")

        self.fs = fs
        self.field_type = field_type
        self.time_skip = time_skip
        self.binaural = binaural
        self.return_stages = return_stages
        self.observer = observer
        self.dtype = dtype

        ear_kwargs = ear_kwargs or {}
        peak_kwargs = peak_kwargs or {}
        lowpass_kwargs = lowpass_kwargs or {}

        # Stage 1: Pre-processing
        self.resampler = Resampler(fs=fs, fs_target=FS_MODEL, dtype=dtype)
        self.fade_pad = FadeInPadding(fade_samples=FADE_SAMPLES, pad_start=BLOCK_SIZE, pad_end=0, dtype=dtype)

        # Stage 2: Outer/Middle Ear
        ear_params = {'field_type': field_type, **ear_kwargs}
        self.outer_middle_ear = OuterMiddleEarFilter(dtype=dtype, **ear_params)

        # Stage 3: Auditory Filterbank
        self.filterbank = HalfBarkFilterbank(dtype=dtype)

        # Stage 4-5: Basis Loudness & Envelopes
        self.basis_loudness = BasisLoudness(dtype=dtype)
        self.envelope = HilbertEnvelope()

        # Stage 6: Modulation Spectra
        self.modulation_spectrum = ModulationSpectrum(dtype=dtype)
        self.noise_reduction = ModulationNoiseReduction()

        # Stage 7: Peaks
        peak_defaults = {'amplitude_source': 'weighted'}
        peak_params = {**peak_defaults, **peak_kwargs}
        self.peak_picker = ModulationPeakPicker(dtype=dtype, **peak_params)

        # Stage 8: Weighting
        self.high_rate_weighting = HighRateWeighting(dtype=dtype)
        self.harmonic_grouping = HarmonicGrouping()
        self.low_rate_weighting = LowRateWeighting(dtype=dtype)

        # Stage 9: Output
        self.transform = SpecificRoughnessTransform()
        lowpass_defaults = {'fs': FS_OUTPUT, 'rise_time': 0.0625, 'fall_time': 0.5}
        lowpass_params = {**lowpass_defaults, **lowpass_kwargs}
        self.lowpass = RoughnessLowPass(**lowpass_params)

    def _notify(self, stage: str, progress: float):
        if self.observer is not None:
            self.observer(stage, progress)

    def _prepare_input(self, insig: torch.Tensor) -> torch.Tensor:
        """
        Validate the input signal and bring it to (samples, channels).

        Returns
        -------
        torch.Tensor
            Signal of shape (T, C), C in {1, 2}, in the model dtype.
        """
        x = torch.as_tensor(insig)
        if x.is_complex():
            raise ValueError("Input signal must be real-valued")

        if x.ndim == 1:
            x = x.unsqueeze(-1)
        elif x.ndim != 2:
            raise ValueError(f"Input signal must be 1-D or 2-D (samples x channels), got {x.ndim} dimensions")

        if x.shape[0] > 2 and x.shape[1] > 2:
            raise ValueError(f"Input signal comprises more than 2 channels: shape {tuple(x.shape)}")
        if x.shape[1] > 2:
            warnings.warn(f"Input signal of shape {tuple(x.shape)} looks like row vectors: "
                          f"transposing to (samples x channels)")
            x = x.T

        if x.shape[0] <= MIN_DURATION * self.fs:
            raise ValueError(f"Input signal is too short: {x.shape[0] / self.fs:.3f} s "
                             f"(must be longer than {MIN_DURATION * 1000:.0f} ms)")

        x = x.to(self.dtype)
        if not torch.isfinite(x).all():
            raise ValueError("Input signal contains NaN or Inf samples")

        return x

    def _process_channel(self,
                         signal: torch.Tensor,
                         block_times: torch.Tensor,
                         query_times: torch.Tensor,
                         channel: int,
                         n_channels: int) -> Tuple[torch.Tensor, Dict[str, torch.Tensor]]:
        """
        Specific roughness of one pre-processed, ear-filtered channel.

        Parameters
        ----------
        signal : torch.Tensor
            Padded, ear-filtered signal at 48 kHz, shape (T_pad,).

        block_times : torch.Tensor
            Block times in seconds, shape (L,).

        query_times : torch.Tensor
            Output interpolation grid in seconds, shape (T_out,).

        Returns
        -------
        spec_roughness : torch.Tensor
            Specific roughness, shape (T_out, 53).

        stages : dict
            Intermediate quantities (empty unless ``return_stages``).
        """
        n_blocks = block_times.numel()
        n_bands = self.filterbank.num_channels
        n_env = BLOCK_SIZE // self.envelope.downsample

        envelopes = torch.zeros(n_blocks, n_env, n_bands, dtype=self.dtype, device=signal.device)
        basis = torch.zeros(n_blocks, n_bands, dtype=self.dtype, device=signal.device)

        # Band-wise: filter, segment, loudness, envelope
        for z in range(n_bands):
            band_signal = self.filterbank(signal, bands=z)[0]
            blocks, _ = segment_signal(band_signal, BLOCK_SIZE, BLOCK_OVERLAP, end_shrink=True)
            _, basis[:, z] = self.basis_loudness(blocks, band=z)
            envelopes[:, :, z] = self.envelope(blocks)
            self._notify('filterbank', (channel * n_bands + z + 1) / (n_channels * n_bands))

        # Modulation spectra
        spectra = self.modulation_spectrum(envelopes, basis)
        averaged, weighted, weighting = self.noise_reduction(spectra)
        self._notify('modulation', (channel + 1) / n_channels)

        # Peaks and rates
        amplitudes, rates = self.peak_picker(weighted, averaged)
        self._notify('peaks', (channel + 1) / n_channels)

        # Perceptual weighting and harmonic grouping
        amplitudes_hi = self.high_rate_weighting(amplitudes, rates)
        fundamental_rate, member_amplitudes = self.harmonic_grouping(rates, amplitudes_hi)
        mod_amplitude = self.low_rate_weighting(fundamental_rate, member_amplitudes)
        self._notify('weighting', (channel + 1) / n_channels)

        # Output grid, transform and smoothing
        estimate = self.transform(mod_amplitude, block_times, query_times)
        spec_roughness = self.lowpass(estimate)

        stages = {}
        if self.return_stages:
            stages = {'basis_loudness': basis,
                      'envelopes': envelopes,
                      'mod_spectra': spectra,
                      'mod_spectra_avg': averaged,
                      'mod_weighting': weighting,
                      'mod_spectra_weighted': weighted,
                      'peak_amplitudes': amplitudes,
                      'peak_rates': rates,
                      'peak_amplitudes_hi': amplitudes_hi,
                      'fundamental_rate': fundamental_rate,
                      'mod_amplitude': mod_amplitude,
                      'spec_roughness_est': estimate}

        return spec_roughness, stages

    def forward(self,
                insig: torch.Tensor) -> Union[RoughnessResult, Tuple[RoughnessResult, Dict[str, Any]]]:
        """
        Compute the roughness of a sound pressure signal.

        Parameters
        ----------
        insig : torch.Tensor or array-like
            Calibrated sound pressure in Pa, shape (T,), (T, 1) or (T, 2).
            Row-vector input (1, T) or (2, T) is transposed with a warning.

        Returns
        -------
        RoughnessResult or tuple
            :class:`MonoRoughness`, :class:`StereoRoughness` or
            :class:`StereoWithBinauralRoughness`; with ``return_stages=True``
            a tuple ``(result, stages)`` where ``stages`` maps stage names to
            lists with one tensor per channel, plus the shared ``'block_times'``.
        """
        x = self._prepare_input(insig)
        n_samples, n_channels = x.shape
        device = x.device

        self._notify('preprocessing', 0.0)

        # Stage 1-2: resample, fade-in, pad, outer/middle ear
        x = x.T.contiguous()                        # (C, T)
        x_model = self.resampler(x)                 # (C, T_48k)
        n_model = x_model.shape[-1]
        padded = self.fade_pad(x_model)             # (C, T_pad)
        filtered = self.outer_middle_ear(padded)

        # Time axes
        n_blocks = num_blocks(padded.shape[-1], BLOCK_SIZE, BLOCK_OVERLAP, end_shrink=True)
        block_times = torch.arange(n_blocks, dtype=self.dtype, device=device) * HOP_SIZE / FS_MODEL
        signal_duration = n_samples / self.fs
        n_out = math.floor(n_model / FS_MODEL * FS_OUTPUT)
        query_times = torch.linspace(0, signal_duration - 1 / FS_OUTPUT, n_out, dtype=self.dtype, device=device)
        time_out = torch.arange(n_out, dtype=self.dtype, device=device) / FS_OUTPUT
        time_insig = torch.arange(n_samples, dtype=self.dtype, device=device) / self.fs

        self._notify('preprocessing', 1.0)

        # Stage 3-9 per channel
        spec_channels = []
        stages = {'block_times': block_times} if self.return_stages else None
        for c in range(n_channels):
            spec_c, stages_c = self._process_channel(filtered[c], block_times, query_times, c, n_channels)
            spec_channels.append(spec_c)
            if self.return_stages:
                for name, value in stages_c.items():
                    stages.setdefault(name, []).append(value)

        # Aggregation
        idx = time_skip_index(time_out, self.time_skip)
        band_centre_freqs = BAND_CENTRE_FREQS.to(device=device, dtype=self.dtype)

        spec_roughness = spec_channels[0] if n_channels == 1 else torch.stack(spec_channels, dim=-1)
        spec_roughness_avg = torch.mean(spec_roughness[idx:], dim=0)
        roughness_tdep = torch.sum(spec_roughness, dim=1) * DZ
        stats = RoughnessStatistics.from_series(roughness_tdep, time_out, self.time_skip)

        common = dict(spec_roughness=spec_roughness,
                      spec_roughness_avg=spec_roughness_avg,
                      roughness_tdep=roughness_tdep,
                      band_centre_freqs=band_centre_freqs,
                      time_out=time_out,
                      time_insig=time_insig,
                      sound_field=self.field_type,
                      time_skip=self.time_skip,
                      stats=stats)

        if n_channels == 1:
            result = MonoRoughness(**common)
        elif self.binaural:
            spec_roughness_bin = binaural_roughness(spec_channels[0], spec_channels[1])
            roughness_tdep_bin = torch.sum(spec_roughness_bin, dim=1) * DZ
            result = StereoWithBinauralRoughness(
                **common,
                spec_roughness_bin=spec_roughness_bin,
                spec_roughness_avg_bin=torch.mean(spec_roughness_bin[idx:], dim=0),
                roughness_tdep_bin=roughness_tdep_bin,
                stats_bin=RoughnessStatistics.from_series(roughness_tdep_bin, time_out, self.time_skip))
        else:
            result = StereoRoughness(**common)

        self._notify('aggregation', 1.0)

        if self.return_stages:
            return result, stages
        return result

    def get_parameters(self) -> Dict[str, Any]:
        """
        Get all model parameters.

        Returns
        -------
        dict
            Dictionary with model parameters:
            - 'fs': Input sampling rate
            - 'field_type': Sound field
            - 'time_skip': Transient window (s)
            - 'binaural': Whether the binaural channel is computed
            - 'return_stages': Whether intermediate stages are returned
            - 'peak_amplitude_source': Spectrum summed for peak amplitudes
            - 'rise_time', 'fall_time': Low-pass time constants (s)
        """
        return {'fs': self.fs,
                'field_type': self.field_type,
                'time_skip': self.time_skip,
                'binaural': self.binaural,
                'return_stages': self.return_stages,
                'peak_amplitude_source': self.peak_picker.amplitude_source,
                'rise_time': self.lowpass.rise_time,
                'fall_time': self.lowpass.fall_time}

    def extra_repr(self) -> str:
        """
        Extra representation for printing.

        Returns
        -------
        str
            String representation of module parameters.
        """
        return (f"fs={self.fs}, field_type='{self.field_type}', time_skip={self.time_skip}, "
                f"binaural={self.binaural}, return_stages={self.return_stages}")


def roughness_ecma418_2(insig: torch.Tensor,
                        fs: int,
                        field_type: str = 'free-frontal',
                        time_skip: float = MIN_DURATION,
                        binaural: bool = True,
                        observer: Optional[Observer] = None,
                        **kwargs) -> RoughnessResult:
    """
    Compute ECMA-418-2 roughness in one call.

    Parameters
    ----------
    insig : torch.Tensor or array-like
        Calibrated sound pressure in Pa, shape (T,), (T, 1) or (T, 2).

    fs : int
        Sampling rate in Hz.

    field_type : {'free-frontal', 'diffuse'}, optional
        Sound field. Default: ``'free-frontal'``.

    time_skip : float, optional
        Transient window in seconds. Default: 0.3.

    binaural : bool, optional
        Compute the binaural channel for stereo input. Default: True.

    observer : callable, optional
        Progress callback ``observer(stage, progress)``.

    **kwargs
        Further :class:`ECMA418Roughness` arguments (``dtype``, ``ear_kwargs``,
        ``peak_kwargs``, ``lowpass_kwargs``).

    Returns
    -------
    RoughnessResult
        Result record matching the channel layout of the input.
    """
    model = ECMA418Roughness(fs=fs, field_type=field_type, time_skip=time_skip,
                             binaural=binaural, observer=observer, return_stages=False, **kwargs)
    with torch.no_grad():
        return model(insig)
