"""
Time-Series Statistics
======================

Author:
    Stefano Giacomelli - Ph.D. candidate @ DISIM dpt. - University of L'Aquila

License:
    GNU General Public License v3.0 or later (GPLv3+)

Summary statistics of time-dependent metrics after discarding an initial
transient window. Percentiles follow the psychoacoustic convention: :math:`R_x`
is the value exceeded during x % of the time, i.e. the (100 - x)-th percentile
of the distribution (MATLAB ``prctile`` interpolation).
"""

from dataclasses import dataclass, field
from typing import Dict

import torch

PERCENTILES = (1, 2, 3, 4, 5, 10, 20, 30, 40, 50, 60, 70, 80, 90, 95)

# ------------------------------------------------- Utilities ------------------------------------------------

def exceeded_percentile(x: torch.Tensor, percent: float, dim: int = 0) -> torch.Tensor:
    r"""
    Value exceeded during ``percent`` % of the samples.

    Computes the :math:`(100 - x)`-th percentile with midpoint plotting
    positions: the sorted sample :math:`i` (1-based) sits at percentile
    :math:`100 (i - 0.5) / n`, values in between are linearly interpolated and
    values beyond the first/last position are clamped.

    Parameters
    ----------
    x : torch.Tensor
        Samples, shape (..., n, ...).

    percent : float
        Exceedance percentage in [0, 100].

    dim : int, optional
        Sample dimension. Default: 0.

    Returns
    -------
    torch.Tensor
        Percentile values with ``dim`` removed.

    Raises
    ------
    ValueError
        If ``percent`` is outside [0, 100] or ``x`` is empty along ``dim``.
    """
    if not 0 <= percent <= 100:
        raise ValueError(f"percent must be in [0, 100], got {percent}")
    n = x.shape[dim]
    if n == 0:
        raise ValueError("Cannot compute a percentile of an empty series")

    x_sorted = torch.sort(x, dim=dim).values
    position = n * (100 - percent) / 100 + 0.5
    position = min(max(position, 1.0), float(n))

    lower = int(position)
    frac = position - lower
    upper = min(lower, n - 1)

    x_lo = x_sorted.select(dim, lower - 1)
    x_hi = x_sorted.select(dim, upper)
    return x_lo + frac * (x_hi - x_lo)


def time_skip_index(time_out: torch.Tensor, time_skip: float) -> int:
    """
    Index of the output sample closest to ``time_skip`` (first on ties).

    Parameters
    ----------
    time_out : torch.Tensor
        Output time axis in seconds, shape (T,).

    time_skip : float
        Transient window to discard in seconds, >= 0.

    Returns
    -------
    int
        First retained sample.
    """
    if time_skip < 0:
        raise ValueError(f"time_skip must be >= 0, got {time_skip}")
    return int(torch.argmin(torch.abs(time_out - time_skip)).item())

# ------------------------------------------------ Statistics ------------------------------------------------

@dataclass
class RoughnessStatistics:
    """
    Summary statistics of a time-dependent metric.

    Every field holds one value per channel: a scalar tensor for single-channel
    series or a tensor of shape (C,) for multi-channel series.

    Attributes
    ----------
    max, min, mean, std, median : torch.Tensor
        Maximum, minimum, mean, sample standard deviation and median.

    percentiles : dict
        Exceedance percentiles ``{x: R_x}`` for x in 1, 2, 3, 4, 5, 10, ..., 95.

    series : torch.Tensor
        Retained samples the statistics were computed from, shape (T', ...).
    """

    max: torch.Tensor
    min: torch.Tensor
    mean: torch.Tensor
    std: torch.Tensor
    median: torch.Tensor
    percentiles: Dict[int, torch.Tensor] = field(default_factory=dict)
    series: torch.Tensor = field(default=None, repr=False)

    @classmethod
    def from_series(cls, series: torch.Tensor, time_out: torch.Tensor, time_skip: float) -> 'RoughnessStatistics':
        """
        Compute statistics of a time series after a transient skip.

        Parameters
        ----------
        series : torch.Tensor
            Time series, shape (T,) or (T, C).

        time_out : torch.Tensor
            Time axis in seconds, shape (T,).

        time_skip : float
            Transient window to discard in seconds.

        Returns
        -------
        RoughnessStatistics
            Statistics over ``series[idx:]`` with ``idx`` the sample closest to
            ``time_skip``.
        """
        idx = time_skip_index(time_out, time_skip)
        kept = series[idx:]

        if kept.shape[0] > 1:
            std = torch.std(kept, dim=0, unbiased=True)
        else:
            std = torch.zeros_like(kept[0])

        median = exceeded_percentile(kept, 50)
        percentiles = {x: (median if x == 50 else exceeded_percentile(kept, x)) for x in PERCENTILES}

        return cls(max=torch.max(kept, dim=0).values,
                   min=torch.min(kept, dim=0).values,
                   mean=torch.mean(kept, dim=0),
                   std=std,
                   median=median,
                   percentiles=percentiles,
                   series=kept)

    def exceeded(self, percent: float) -> torch.Tensor:
        """
        Value exceeded during ``percent`` % of the retained time.

        Parameters
        ----------
        percent : float
            Exceedance percentage in [0, 100].

        Returns
        -------
        torch.Tensor
            Percentile value per channel.
        """
        return exceeded_percentile(self.series, percent)

    def as_dict(self) -> Dict[str, torch.Tensor]:
        """
        Flat mapping ``{'Rmax', 'Rmin', 'Rmean', 'Rstd', 'R1', ..., 'R95'}``.

        Returns
        -------
        dict
            Statistic name to value.
        """
        out = {'Rmax': self.max, 'Rmin': self.min, 'Rmean': self.mean, 'Rstd': self.std}
        out.update({f'R{x}': value for x, value in self.percentiles.items()})
        return out
