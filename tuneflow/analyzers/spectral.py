"""FFT spectrum analysis -- band energy, dominant frequency and peak finding.

Every window-level detector runs through ``analyze_frequency``: a single
Hann-windowed FFT over at most 2048 samples, with magnitudes scaled by
2/N.  The factor 2 only offsets the Hann coherent gain, so a pure sine of
amplitude A shows up as roughly A/2.  Rule thresholds are calibrated to
this scale.  Band edges follow Betaflight's noise domains:

    low  :   0-30 Hz   (aerodynamics, I-term hunting, frame sway)
    mid  :  30-150 Hz  (PID oscillation, propwash, structural resonance)
    high : 150+ Hz     (motor noise, electrical noise, prop harmonics)

For long steady stretches ``compute_averaged_spectrum`` averages
overlapping 2048-sample segments with scipy's STFT for a smoother
estimate on the same 2/N scale.
"""
from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
from scipy.signal import find_peaks, stft

MAX_FFT_SIZE = 2048
LOW_BAND_HZ = 30.0
MID_BAND_HZ = 150.0

AVERAGED_SEGMENT_SIZE = 2048
AVERAGED_MAX_SAMPLES = 32768
AVERAGED_MIN_SAMPLES = 64


@dataclass
class BandEnergy:
    low: float = 0.0
    mid: float = 0.0
    high: float = 0.0

    @property
    def total(self) -> float:
        return self.low + self.mid + self.high

    def high_ratio(self) -> float:
        """Fraction of energy above 150 Hz (0 for an empty spectrum)."""
        total = self.total
        return self.high / total if total > 0 else 0.0


@dataclass
class FrequencySpectrum:
    frequencies: np.ndarray
    magnitudes: np.ndarray
    dominant_frequency: float = 0.0
    dominant_magnitude: float = 0.0
    band_energy: BandEnergy = field(default_factory=BandEnergy)

    @property
    def is_empty(self) -> bool:
        return len(self.frequencies) == 0


@dataclass
class SpectralPeak:
    frequency: float
    magnitude: float
    bin_index: int
    prominence: float           # magnitude / mean of the two neighbour bins


@dataclass
class AveragedSpectrum:
    frequencies: np.ndarray
    magnitudes: np.ndarray
    peaks: list


def _empty_spectrum() -> FrequencySpectrum:
    return FrequencySpectrum(frequencies=np.zeros(0), magnitudes=np.zeros(0))


def _next_pow2(n: int) -> int:
    return 1 << int(np.ceil(np.log2(n)))


def analyze_frequency(signal, sample_rate: float) -> FrequencySpectrum:
    """Single-shot magnitude spectrum of a signal.

    Parameters
    ----------
    signal : 1-D array
        Time-domain samples.  Non-finite values are treated as 0.
    sample_rate : float
        Sampling frequency in Hz.

    Returns
    -------
    FrequencySpectrum
        Empty (zero-length arrays, zero dominant frequency) when fewer than
        4 samples are given or the sample rate is not positive.
    """
    signal = np.nan_to_num(np.asarray(signal, dtype=np.float64), nan=0.0, posinf=0.0, neginf=0.0)
    if len(signal) < 4 or sample_rate <= 0:
        return _empty_spectrum()

    fft_size = _next_pow2(min(len(signal), MAX_FFT_SIZE))
    if len(signal) >= fft_size:
        padded = signal[:fft_size]
    else:
        padded = np.concatenate([signal, np.zeros(fft_size - len(signal))])

    # Remove DC, then window
    centered = padded - padded.mean()
    windowed = centered * np.hanning(fft_size)

    half = fft_size // 2
    spectrum = np.fft.fft(windowed)[:half]
    # Hann coherent gain is 0.5, so scale by 2 on top of the 1/N
    magnitudes = np.abs(spectrum) / fft_size * 2.0
    frequencies = np.arange(half) * sample_rate / fft_size

    # Dominant bin, skipping DC
    dominant_idx = 0
    dominant_mag = 0.0
    if half > 1:
        idx = int(np.argmax(magnitudes[1:])) + 1
        if magnitudes[idx] > 0:
            dominant_idx = idx
            dominant_mag = float(magnitudes[idx])

    energy = magnitudes ** 2
    bands = BandEnergy(
        low=float(energy[frequencies < LOW_BAND_HZ].sum()),
        mid=float(energy[(frequencies >= LOW_BAND_HZ) & (frequencies < MID_BAND_HZ)].sum()),
        high=float(energy[frequencies >= MID_BAND_HZ].sum()),
    )

    return FrequencySpectrum(
        frequencies=frequencies,
        magnitudes=magnitudes,
        dominant_frequency=float(frequencies[dominant_idx]),
        dominant_magnitude=dominant_mag,
        band_energy=bands,
    )


def classify_band(frequency: float) -> str:
    """Name the band a frequency falls in."""
    if frequency < LOW_BAND_HZ:
        return "low"
    if frequency < MID_BAND_HZ:
        return "mid"
    return "high"


def find_spectral_peaks(
    frequencies,
    magnitudes,
    top_n: int = 5,
    min_frequency: float = 5.0,
    max_frequency: float = np.inf,
) -> list:
    """Local maxima of a magnitude spectrum, strongest first.

    A peak is a bin strictly larger than both neighbours, so flat
    plateaus are not peaks.  Each peak carries a
    prominence ratio (magnitude over the mean of its two neighbours; 1.0
    when the neighbours are both zero) which separates narrow resonances
    from broadband humps.

    Parameters
    ----------
    frequencies, magnitudes : 1-D arrays
        Output of ``analyze_frequency``.
    top_n : int
        Maximum number of peaks returned.
    min_frequency, max_frequency : float
        Only peaks inside [min_frequency, max_frequency] are considered.

    Returns
    -------
    list of SpectralPeak
    """
    frequencies = np.asarray(frequencies, dtype=np.float64)
    magnitudes = np.asarray(magnitudes, dtype=np.float64)
    if len(magnitudes) < 3:
        return []

    indices, _ = find_peaks(magnitudes)
    peaks = []
    for idx in indices:
        freq = frequencies[idx]
        if freq < min_frequency or freq > max_frequency:
            continue
        # find_peaks also reports the middle of a plateau
        if not (magnitudes[idx] > magnitudes[idx - 1] and magnitudes[idx] > magnitudes[idx + 1]):
            continue
        neighbour_avg = (magnitudes[idx - 1] + magnitudes[idx + 1]) / 2.0
        prominence = magnitudes[idx] / neighbour_avg if neighbour_avg > 0 else 1.0
        peaks.append(SpectralPeak(
            frequency=float(freq),
            magnitude=float(magnitudes[idx]),
            bin_index=int(idx),
            prominence=float(prominence),
        ))

    peaks.sort(key=lambda p: p.magnitude, reverse=True)
    return peaks[:top_n]


def compute_averaged_spectrum(signal, sample_rate: float) -> AveragedSpectrum:
    """Welch-style averaged magnitude spectrum.

    Takes the STFT of the first 32768 samples with 2048-sample Hann
    segments at 50% overlap, each segment mean-removed, and averages the
    segment magnitudes.  ``scaling="spectrum"`` divides by the window sum
    (N/2), which is the same 2/N scale ``analyze_frequency`` uses.
    Signals shorter than one segment get a single FFT; signals shorter
    than 64 samples give an empty result.
    """
    empty = AveragedSpectrum(frequencies=np.zeros(0), magnitudes=np.zeros(0), peaks=[])
    signal = np.nan_to_num(np.asarray(signal, dtype=np.float64), nan=0.0, posinf=0.0, neginf=0.0)
    if len(signal) < AVERAGED_MIN_SAMPLES or sample_rate <= 0:
        return empty

    trimmed = signal[:AVERAGED_MAX_SAMPLES]
    if len(trimmed) < AVERAGED_SEGMENT_SIZE:
        result = analyze_frequency(trimmed, sample_rate)
        if result.is_empty:
            return empty
        peaks = find_spectral_peaks(result.frequencies, result.magnitudes, 5)
        return AveragedSpectrum(result.frequencies, result.magnitudes, peaks)

    freqs, _, segments = stft(
        trimmed,
        fs=sample_rate,
        window="hann",
        nperseg=AVERAGED_SEGMENT_SIZE,
        noverlap=AVERAGED_SEGMENT_SIZE // 2,
        detrend="constant",
        boundary=None,
        padded=False,
        scaling="spectrum",
    )
    # Drop the Nyquist bin so the axis matches analyze_frequency
    half = AVERAGED_SEGMENT_SIZE // 2
    frequencies = freqs[:half]
    magnitudes = np.abs(segments[:half]).mean(axis=-1)
    peaks = find_spectral_peaks(frequencies, magnitudes, 5)
    return AveragedSpectrum(frequencies, magnitudes, peaks)


def calculate_rms(signal) -> float:
    signal = np.asarray(signal, dtype=np.float64)
    if signal.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(signal ** 2)))


def calculate_std_dev(signal) -> float:
    """Population standard deviation (0 for an empty signal)."""
    signal = np.asarray(signal, dtype=np.float64)
    if signal.size == 0:
        return 0.0
    return float(np.std(signal))


def count_zero_crossings(signal) -> int:
    signal = np.asarray(signal, dtype=np.float64)
    if signal.size < 2:
        return 0
    negative = signal < 0
    return int(np.count_nonzero(negative[1:] != negative[:-1]))


def estimate_phase_lag(setpoint, gyro, sample_rate: float):
    """Delay of gyro behind setpoint via time-domain cross-correlation.

    Only positive lags up to 20 ms are searched (gyro cannot lead the
    setpoint).  Each lag's correlation sum is divided by its overlap length
    so short overlaps are not penalised.

    Returns
    -------
    lag_ms : float
    correlation : float
        Pearson-style normalised correlation at the chosen lag (0 when
        either signal is all zeros).
    """
    setpoint = np.asarray(setpoint, dtype=np.float64)
    gyro = np.asarray(gyro, dtype=np.float64)
    n = min(len(setpoint), len(gyro))
    if n < 2 or sample_rate <= 0:
        return 0.0, 0.0
    setpoint = setpoint[:n]
    gyro = gyro[:n]

    max_lag = min(int(np.ceil(sample_rate * 0.02)), n - 1)
    best_lag = 0
    best_corr = -np.inf
    for lag in range(max_lag + 1):
        overlap = n - lag
        corr = np.dot(setpoint[:overlap], gyro[lag:]) / overlap
        if corr > best_corr:
            best_corr = corr
            best_lag = lag

    x = setpoint[:n - best_lag]
    y = gyro[best_lag:]
    denom = np.sqrt(np.dot(x, x) * np.dot(y, y))
    correlation = float(np.dot(x, y) / denom) if denom > 0 else 0.0

    return best_lag / sample_rate * 1000.0, correlation
