"""
Signal Processing and Filtering Utilities
==========================================

Filtering, interpolation and analytic-signal helpers shared by the sound quality
metric stages.

Author:
    Stefano Giacomelli - Ph.D. candidate @ DISIM dpt. - University of L'Aquila

License:
    GNU General Public License v3.0 or later (GPLv3+)

Contents
--------

**Signal Analysis & Processing:**
    - `torch_hilbert`: Hilbert transform via FFT for analytic signal computation
    - `torch_pchip_interp`: Piecewise Cubic Hermite interpolation (shape-preserving,
      MATLAB ``pchip`` conventions)

**Recursive Filtering:**
    - `apply_sos`: Cascade of biquad sections (``scipy.signal.sosfilt`` backend)
    - `apply_iir`: Real or complex transfer-function filtering (``scipy.signal.lfilter`` backend)
    - `SOSFilter`: nn.Module wrapper for fixed SOS cascades
    - `IIRFilter`: nn.Module wrapper for fixed (possibly complex) b/a filters

Design Philosophy
-----------------
- **Float64 by default**: standard-conformant metrics need double precision
- **Device-transparent**: outputs are returned on the device of the input tensor
- **Compiled recursions**: per-sample recursions run through scipy's C kernels,
  long 48 kHz signals make Python-level sample loops impractical

See Also
--------
- `torch_sqm.common.filterbanks`: Half-Bark auditory filterbank
- `torch_sqm.common.ears`: Outer/middle ear filter
"""

from typing import Optional

import numpy as np
import torch
import torch.nn as nn
from scipy import signal as scipy_signal

# -------------------------------------------------- Analysis -----------------------------------------------

def torch_hilbert(x: torch.Tensor, dim: int = -1) -> torch.Tensor:
    """
    Compute the analytic signal using the FFT (PyTorch native).

    Equivalent to ``scipy.signal.hilbert`` and MATLAB ``hilbert``.

    Parameters
    ----------
    x : torch.Tensor
        Real input signal, shape (..., N, ...).

    dim : int, optional
        Dimension along which the transform is computed. Default: -1.

    Returns
    -------
    torch.Tensor
        Analytic signal (complex), same shape as ``x``.

    Notes
    -----
    Algorithm:
    1. FFT of input
    2. Zero out negative frequencies
    3. Double positive frequencies (except DC and Nyquist)
    4. IFFT to get analytic signal
    """
    X = torch.fft.fft(x, dim=dim)
    N = x.shape[dim]

    # One-sided spectral mask
    h = torch.zeros(N, device=x.device, dtype=x.dtype)
    h[0] = 1
    if N % 2 == 0:
        h[1:N // 2] = 2
        h[N // 2] = 1
    else:
        h[1:(N + 1) // 2] = 2

    # Broadcast mask along the transform dimension
    shape = [1] * x.ndim
    shape[dim] = N
    X_analytic = X * h.reshape(shape).to(X.dtype)

    return torch.fft.ifft(X_analytic, dim=dim)


def _pchip_end_slope(h0: torch.Tensor, h1: torch.Tensor,
                     del0: torch.Tensor, del1: torch.Tensor) -> torch.Tensor:
    """Shape-preserving three-point end slope (MATLAB ``pchip`` convention)."""
    d = ((2 * h0 + h1) * del0 - h0 * del1) / (h0 + h1)

    # Slope must agree in sign with the end secant
    d = torch.where(torch.sign(d) != torch.sign(del0), torch.zeros_like(d), d)

    # Limit the slope where the data change direction
    overshoot = (torch.sign(del0) != torch.sign(del1)) & (torch.abs(d) > torch.abs(3 * del0))
    d = torch.where(overshoot, 3 * del0, d)

    return d


def torch_pchip_interp(x: torch.Tensor, y: torch.Tensor, xi: torch.Tensor) -> torch.Tensor:
    r"""
    PCHIP (Piecewise Cubic Hermite Interpolating Polynomial) interpolation (PyTorch native).

    Shape-preserving cubic interpolation that respects the monotonicity of the data.
    Matches MATLAB ``pchip`` and ``scipy.interpolate.PchipInterpolator``: interior
    slopes are weighted harmonic means of the neighbouring secants, end slopes use
    the non-centred three-point formula, and queries outside ``[x[0], x[-1]]`` are
    extrapolated with the end polynomials.

    Parameters
    ----------
    x : torch.Tensor
        X coordinates of data points, shape (N,), strictly increasing.

    y : torch.Tensor
        Y coordinates of data points, shape (N,) or (N, ...). Trailing dimensions
        are interpolated independently (one curve per column).

    xi : torch.Tensor
        X coordinates for interpolation, shape (M,).

    Returns
    -------
    torch.Tensor
        Interpolated values, shape (M,) or (M, ...).

    Notes
    -----
    1. Secants between consecutive points:

       .. math::
           h_k = x_{k+1} - x_k, \quad \delta_k = \frac{y_{k+1} - y_k}{h_k}

    2. Interior derivatives (zero at local extrema):

       .. math::
           d_k = \frac{w_1 + w_2}{\frac{w_1}{\delta_{k-1}} + \frac{w_2}{\delta_k}}

       where :math:`w_1 = 2h_k + h_{k-1}`, :math:`w_2 = h_k + 2h_{k-1}`

    3. Cubic Hermite polynomial on each interval with :math:`t = (x - x_k)/h_k`.

    With two data points the interpolant is linear.

    References
    ----------
    .. [1] Fritsch, F. N. and Carlson, R. E. (1980). "Monotone Piecewise Cubic Interpolation."
           SIAM Journal on Numerical Analysis, 17(2), 238-246.

    .. [2] Moler, C. (2004). *Numerical Computing with MATLAB*, Section 3.4. SIAM.
    """
    n = x.shape[0]
    if n < 2:
        raise ValueError(f"PCHIP interpolation needs at least 2 data points, got {n}")
    if y.shape[0] != n:
        raise ValueError(f"x and y must have the same length, got {n} and {y.shape[0]}")

    squeeze = y.ndim == 1
    if squeeze:
        y = y.unsqueeze(-1)
    trailing = y.shape[1:]
    y = y.reshape(n, -1)

    h = (x[1:] - x[:-1]).unsqueeze(-1)  # (N-1, 1)
    delta = (y[1:] - y[:-1]) / h        # (N-1, C)

    if n == 2:
        d = delta.expand(2, -1).clone()
    else:
        d = torch.zeros_like(y)

        # Interior points: weighted harmonic mean where secants share sign
        h_km1, h_k = h[:-1], h[1:]
        del_km1, del_k = delta[:-1], delta[1:]
        w1 = 2 * h_k + h_km1
        w2 = h_k + 2 * h_km1
        same_sign = (torch.sign(del_km1) * torch.sign(del_k)) > 0
        safe_km1 = torch.where(same_sign, del_km1, torch.ones_like(del_km1))
        safe_k = torch.where(same_sign, del_k, torch.ones_like(del_k))
        d_interior = (w1 + w2) / (w1 / safe_km1 + w2 / safe_k)
        d[1:-1] = torch.where(same_sign, d_interior, torch.zeros_like(d_interior))

        # End points
        d[0] = _pchip_end_slope(h[0], h[1], delta[0], delta[1])
        d[-1] = _pchip_end_slope(h[-1], h[-2], delta[-1], delta[-2])

    # Locate intervals (end intervals extended for extrapolation)
    k = torch.searchsorted(x.contiguous(), xi.contiguous(), right=True) - 1
    k = k.clamp(0, n - 2)

    hk = h[k]                             # (M, 1)
    t = ((xi - x[k]).unsqueeze(-1)) / hk  # (M, 1)
    t2 = t * t
    t3 = t2 * t

    H0 = 2 * t3 - 3 * t2 + 1
    H1 = -2 * t3 + 3 * t2
    H2 = t3 - 2 * t2 + t
    H3 = t3 - t2

    yi = y[k] * H0 + y[k + 1] * H1 + hk * d[k] * H2 + hk * d[k + 1] * H3
    yi = yi.reshape((xi.shape[0],) + tuple(trailing))

    if squeeze:
        yi = yi.squeeze(-1)

    return yi

# -------------------------------------------------- Filters ------------------------------------------------

class SOSFilter(nn.Module):
    """
    Apply a fixed cascade of Second-Order Sections (SOS).

    SOS representation provides better numerical stability than a single
    transfer function for high-order responses.

    Parameters
    ----------
    sos : torch.Tensor
        Second-order sections coefficients, shape (n_sections, 6).
        Each row: [b0, b1, b2, a0, a1, a2] for one biquad section.

    dtype : torch.dtype, optional
        Data type of the stored coefficients. Default: ``torch.float64``.

    Shape
    -----
    - Input: :math:`(..., T)`
    - Output: Same shape as input

    Examples
    --------
    >>> import torch
    >>> from scipy.signal import butter
    >>> from torch_sqm.common.filters import SOSFilter
    >>>
    >>> sos = torch.tensor(butter(2, 1000.0, fs=48000, output='sos'))
    >>> filt = SOSFilter(sos)
    >>> filt(torch.randn(2, 4800, dtype=torch.float64)).shape
    torch.Size([2, 4800])

    Notes
    -----
    Uses ``scipy.signal.sosfilt`` as backend; filtering is not differentiable.

    See Also
    --------
    IIRFilter : Apply b/a coefficients
    """

    def __init__(self, sos: torch.Tensor, dtype: torch.dtype = torch.float64):
        super().__init__()

        sos = torch.as_tensor(sos, dtype=dtype)
        if sos.ndim != 2 or sos.shape[1] != 6:
            raise ValueError(f"SOS must have shape (n_sections, 6), got {tuple(sos.shape)}")

        self.n_sections = sos.shape[0]
        self.register_buffer('sos', sos)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Apply SOS filter along the last dimension.

        Parameters
        ----------
        x : torch.Tensor
            Input signal, shape (..., time).

        Returns
        -------
        torch.Tensor
            Filtered signal, same shape as input.
        """
        return apply_sos(x, self.sos)

    def extra_repr(self) -> str:
        """
        Extra representation string for module printing.

        Returns
        -------
        str
            String containing key module parameters.
        """
        return f"n_sections={self.n_sections}"


class IIRFilter(nn.Module):
    """
    Apply a fixed IIR filter with b/a coefficients.

    Complex coefficients are supported, in which case the output is complex.

    Parameters
    ----------
    b : torch.Tensor
        Numerator coefficients, shape (n_b,).

    a : torch.Tensor
        Denominator coefficients, shape (n_a,). ``a[0]`` must be non-zero.

    Shape
    -----
    - Input: :math:`(..., T)`
    - Output: Same shape as input (complex if the coefficients are complex)

    Notes
    -----
    Uses ``scipy.signal.lfilter`` as backend.
    """

    def __init__(self, b: torch.Tensor, a: torch.Tensor):
        super().__init__()

        b = torch.as_tensor(b)
        a = torch.as_tensor(a)
        if b.ndim != 1 or a.ndim != 1:
            raise ValueError(f"b and a must be 1-D, got shapes {tuple(b.shape)} and {tuple(a.shape)}")
        if a[0] == 0:
            raise ValueError("Leading denominator coefficient a[0] must be non-zero")

        self.register_buffer('b', b)
        self.register_buffer('a', a)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        """
        Apply IIR filter along the last dimension.

        Parameters
        ----------
        x : torch.Tensor
            Input signal, shape (..., time).

        Returns
        -------
        torch.Tensor
            Filtered signal.
        """
        return apply_iir(x, self.b, self.a)

    def extra_repr(self) -> str:
        """
        Extra representation string for module printing.

        Returns
        -------
        str
            String containing key module parameters.
        """
        return f"order={max(len(self.b), len(self.a)) - 1}, complex={self.b.is_complex() or self.a.is_complex()}"

# ------------------------------------------------- Utilities ------------------------------------------------

def _to_numpy(x: torch.Tensor) -> np.ndarray:
    return x.detach().cpu().numpy()


def apply_sos(x: torch.Tensor, sos: torch.Tensor, dim: int = -1) -> torch.Tensor:
    """
    Apply a biquad cascade to a signal.

    Parameters
    ----------
    x : torch.Tensor
        Input signal, shape (..., T, ...).

    sos : torch.Tensor
        Second-order sections, shape (n_sections, 6).

    dim : int, optional
        Time dimension. Default: -1.

    Returns
    -------
    torch.Tensor
        Filtered signal with the dtype and device of ``x``.
    """
    y = scipy_signal.sosfilt(_to_numpy(sos), _to_numpy(x), axis=dim)
    return torch.from_numpy(np.ascontiguousarray(y)).to(device=x.device, dtype=x.dtype)


def apply_iir(x: torch.Tensor,
              b: torch.Tensor,
              a: torch.Tensor,
              dim: int = -1,
              out_dtype: Optional[torch.dtype] = None) -> torch.Tensor:
    """
    Apply a (possibly complex) transfer-function filter to a signal.

    Parameters
    ----------
    x : torch.Tensor
        Input signal, shape (..., T, ...).

    b : torch.Tensor
        Numerator coefficients, shape (n_b,).

    a : torch.Tensor
        Denominator coefficients, shape (n_a,).

    dim : int, optional
        Time dimension. Default: -1.

    out_dtype : torch.dtype, optional
        Output dtype. Defaults to ``x.dtype`` for real coefficients and to the
        matching complex dtype otherwise.

    Returns
    -------
    torch.Tensor
        Filtered signal on the device of ``x``.
    """
    y = scipy_signal.lfilter(_to_numpy(b), _to_numpy(a), _to_numpy(x), axis=dim)

    if out_dtype is None:
        if np.iscomplexobj(y):
            out_dtype = torch.complex128 if x.dtype == torch.float64 else torch.complex64
        else:
            out_dtype = x.dtype

    return torch.from_numpy(np.ascontiguousarray(y)).to(device=x.device, dtype=out_dtype)
