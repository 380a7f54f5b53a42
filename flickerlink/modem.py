# flickerlink/modem.py
#
# The physical layer of a screen-to-camera optical data link.
# A message is framed into bits and every bit becomes one of two flicker tones
# (binary frequency-shift keying): a period-2 on/off square wave for 1 and a
# period-3 pulse train for 0. The screen plays the waveform back one sample per
# display tick.
#
# The receiver gets one mean-brightness sample per camera frame, keeps the
# most recent ones in a sliding window, runs an FFT over a sub-window every
# K frames and reads the bit from the dominant frequency bin. Bits are
# regrouped into bytes and bytes into characters.
#
# Dependencies:
# pip install numpy

import collections
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Dict, Tuple

import numpy as np

# --- Configuration ---
SAMPLE_RATE = 30             # Display / camera ticks per second
WINDOW_SIZE = 48             # Samples held by the receiver's sliding window
ANALYSIS_SIZE = 16           # FFT length, must be a power of two
ANALYSIS_LAG = 0             # Samples between the newest sample and the FFT slice
DECIMATION = 16              # Receiver ticks per classified bit
SAMPLES_PER_BIT = 16         # Waveform samples per payload bit
SYMBOL_SAMPLES_PER_BIT = 16  # Waveform samples per start/end symbol bit
TONE_0 = (1, 0, 0)           # Pulse train, dominant bin 5 at the default sizing
TONE_1 = (1, 0)              # Square wave at Nyquist, bin 8 at the default sizing
START_SYMBOL = b'%'
END_SYMBOL = b'/'
SENTINEL = '?'               # Replaces decoded bytes that aren't renderable
LOW_LEVEL = 0.5              # Screen alpha for a low sample
HIGH_LEVEL = 1.0             # Screen alpha for a high sample

# Dominant bin -> bit. Bins missing from the table read as 0.
BIN_TABLE = {3: 0, 4: 0, 5: 0, 6: 1, 7: 1, 8: 1}

# Non-printable characters the decoder still passes through.
PASSTHROUGH_CONTROLS = '\t\n\r'


def _is_power_of_two(n):
    return n > 0 and n & (n - 1) == 0


@dataclass
class ModemConfig:
    """Parameters shared by both ends of the link, fixed at construction."""
    sample_rate: int = SAMPLE_RATE
    window_size: int = WINDOW_SIZE
    analysis_size: int = ANALYSIS_SIZE
    analysis_lag: int = ANALYSIS_LAG
    decimation: int = DECIMATION
    samples_per_bit: int = SAMPLES_PER_BIT
    symbol_samples_per_bit: int = SYMBOL_SAMPLES_PER_BIT
    tone_0: Tuple[int, ...] = TONE_0
    tone_1: Tuple[int, ...] = TONE_1
    start_symbol: bytes = START_SYMBOL
    end_symbol: bytes = END_SYMBOL
    sentinel: str = SENTINEL
    low_level: float = LOW_LEVEL
    high_level: float = HIGH_LEVEL
    bin_table: Dict[int, int] = field(default_factory=lambda: dict(BIN_TABLE))

    @property
    def bit_duration(self) -> float:
        return self.samples_per_bit / self.sample_rate

    def frame_bits(self, text) -> int:
        """Number of bits in the frame carrying `text`."""
        return 8 * (len(self.start_symbol) + len(text.encode('utf-8')) + len(self.end_symbol))

    def validate(self):
        if self.analysis_size < 4 or not _is_power_of_two(self.analysis_size):
            raise ValueError(f"analysis_size must be a power of two >= 4, got {self.analysis_size}.")
        if self.analysis_lag < 0 or self.analysis_size + self.analysis_lag > self.window_size:
            raise ValueError(
                f"analysis_size + analysis_lag ({self.analysis_size} + {self.analysis_lag}) "
                f"must fit in window_size ({self.window_size}).")
        for name in ('sample_rate', 'decimation', 'samples_per_bit', 'symbol_samples_per_bit'):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be positive.")
        if not self.decimation == self.samples_per_bit == self.symbol_samples_per_bit:
            raise ValueError(
                f"decimation ({self.decimation}), samples_per_bit ({self.samples_per_bit}) and "
                f"symbol_samples_per_bit ({self.symbol_samples_per_bit}) must be equal "
                f"for the receiver to stay bit aligned.")
        for name in ('tone_0', 'tone_1'):
            tone = getattr(self, name)
            if not tone or any(sample not in (0, 1) for sample in tone):
                raise ValueError(f"{name} must be a non-empty pattern of 0/1 samples, got {tone!r}.")
        if tuple(self.tone_0) == tuple(self.tone_1):
            raise ValueError("tone_0 and tone_1 must differ.")
        bin_0 = ToneDetector().detect(tone_for_bit(0, self.analysis_size, self))
        bin_1 = ToneDetector().detect(tone_for_bit(1, self.analysis_size, self))
        if bin_0 == bin_1 or bin_to_bit(bin_0, self) != 0 or bin_to_bit(bin_1, self) != 1:
            raise ValueError(
                f"Tones peak in bins {bin_0} and {bin_1}, which bin_table doesn't map to 0 and 1.")
        if len(self.start_symbol) != 1 or len(self.end_symbol) != 1:
            raise ValueError("Start and end symbols must be single bytes.")
        if self.start_symbol == self.end_symbol:
            raise ValueError("Start and end symbols must differ.")
        if len(self.sentinel) != 1:
            raise ValueError("The sentinel must be a single character.")
        return self


# --- Framing and Waveform Generation ---

def byte_to_bits(value):
    """Returns the 8 bits of a byte, most significant first."""
    return np.unpackbits(np.array([value], dtype=np.uint8))


def _bytes_to_bits(data):
    return np.unpackbits(np.frombuffer(data, dtype=np.uint8))


def frame_layout(text, config=None):
    """Splits the frame for `text` into (start bits, payload bits, end bits)."""
    config = config or ModemConfig()
    return (_bytes_to_bits(config.start_symbol),
            _bytes_to_bits(text.encode('utf-8')),
            _bytes_to_bits(config.end_symbol))


def frame_message(text, config=None):
    """Start symbol, UTF-8 payload and end symbol as one MSB-first bit array."""
    return np.concatenate(frame_layout(text, config))


def tone_for_bit(bit, length, config=None):
    """The tone pattern for `bit`, cycled and truncated to `length` samples."""
    config = config or ModemConfig()
    pattern = np.array(config.tone_1 if bit else config.tone_0, dtype=np.uint8)
    return np.resize(pattern, length)


def _generate_waveform_from_bits(bits, samples_per_bit, config):
    tones = [tone_for_bit(bit, samples_per_bit, config) for bit in bits]
    if not tones:
        return np.zeros(0, dtype=np.uint8)
    return np.concatenate(tones).astype(np.uint8)


def text_to_waveform(text, config=None):
    """Converts a message into the full flicker waveform, one sample per display tick."""
    config = config or ModemConfig()
    start_bits, payload_bits, end_bits = frame_layout(text, config)
    return np.concatenate([
        _generate_waveform_from_bits(start_bits, config.symbol_samples_per_bit, config),
        _generate_waveform_from_bits(payload_bits, config.samples_per_bit, config),
        _generate_waveform_from_bits(end_bits, config.symbol_samples_per_bit, config),
    ])


def waveform_to_levels(waveform, config=None):
    """Maps binary samples to the brightness levels the screen shows."""
    config = config or ModemConfig()
    waveform = np.asarray(waveform)
    return np.where(waveform == 1, config.high_level, config.low_level).astype(np.float32)


# --- Transmission ---

class TransmitterModem:
    """Plays a precomputed flicker waveform back, one sample per tick.

    States go IDLE -> PLAYING -> DONE. Ticks outside PLAYING are no-ops.
    """

    def __init__(self, config=None):
        self.config = (config or ModemConfig()).validate()
        self.state = "IDLE"
        self.waveform = np.zeros(0, dtype=np.uint8)
        self.cursor = 0
        self.last_sample = None

    def start(self, text):
        self.waveform = text_to_waveform(text, self.config)
        self.cursor = 0
        self.last_sample = None
        self.state = "PLAYING" if self.waveform.size else "DONE"
        seconds = self.waveform.size / self.config.sample_rate
        print(f"Transmitting {len(text.encode('utf-8'))} bytes as {self.waveform.size} samples ({seconds:.1f}s).")
        return self.waveform

    def tick(self):
        """Returns the sample to show now, or None once playback is over."""
        if self.state != "PLAYING":
            return None
        sample = int(self.waveform[self.cursor])
        self.cursor += 1
        self.last_sample = sample
        if self.cursor >= self.waveform.size:
            self.state = "DONE"
            print("Transmission finished.")
        return sample

    def stop(self):
        if self.state == "PLAYING":
            print(f"Transmission stopped at sample {self.cursor}/{self.waveform.size}.")
        self.state = "DONE"

    @property
    def level(self):
        if self.last_sample == 0:
            return self.config.low_level
        return self.config.high_level

    @property
    def progress(self):
        return self.cursor, int(self.waveform.size)


# --- Sliding Window and Spectral Detection ---

class SlidingWindow:
    """Fixed-capacity FIFO of the most recent intensity samples, newest last.

    Starts out filled with zeros. Pushes and views take the same lock so a
    reader never sees a half-updated window.
    """

    def __init__(self, capacity=WINDOW_SIZE):
        if capacity < 1:
            raise ValueError(f"Window capacity must be positive, got {capacity}.")
        self._samples = collections.deque([0.0] * capacity, maxlen=capacity)
        self._lock = threading.Lock()
        self.filled = 0

    @property
    def capacity(self):
        return self._samples.maxlen

    def push(self, sample):
        with self._lock:
            self._samples.append(float(sample))
            self.filled = min(self.filled + 1, self.capacity)

    def view(self, count=None, lag=0):
        """The `count` samples ending `lag` samples before the newest one, oldest first."""
        if count is None:
            count = self.capacity
        if count < 0 or lag < 0 or count + lag > self.capacity:
            raise ValueError(f"Cannot view {count} samples at lag {lag} in a window of {self.capacity}.")
        with self._lock:
            samples = np.array(list(self._samples), dtype=np.float32)
        end = self.capacity - lag
        return samples[end - count:end]


def magnitude_spectrum(samples):
    """Single-sided magnitude spectrum of a real signal, bins 0 (DC) through M/2.

    Magnitudes are sqrt(re^2 + im^2) scaled by 2/M. M must be a power of two
    and at least 4.
    """
    samples = np.asarray(samples, dtype=np.float32)
    m = samples.size
    if m < 4 or not _is_power_of_two(m):
        raise ValueError(f"FFT length must be a power of two >= 4, got {m}.")
    spectrum = np.fft.rfft(samples)
    magnitudes = np.sqrt(spectrum.real ** 2 + spectrum.imag ** 2) * (2.0 / m)
    return magnitudes.astype(np.float32)


def dominant_bin(magnitudes):
    """Index of the strongest non-DC bin. The lowest index wins ties."""
    magnitudes = np.asarray(magnitudes)
    if magnitudes.size < 2:
        raise ValueError("Spectrum has no bins besides DC.")
    return int(np.argmax(magnitudes[1:])) + 1


class ToneDetector:
    """Finds the dominant tone of a sub-window through a pluggable spectral transform.

    `transform` is any callable mapping M samples to a magnitude array indexed
    by bin, with bin 0 being DC.
    """

    def __init__(self, transform=magnitude_spectrum):
        self.transform = transform

    def detect(self, samples):
        return dominant_bin(self.transform(samples))


# --- Symbol Classification and Decoding ---

def bin_to_bit(bin_index, config=None):
    config = config or ModemConfig()
    return config.bin_table.get(bin_index, 0)


class SymbolClassifier:
    """Turns the window's analysis slice into one bit every `decimation` ticks."""

    def __init__(self, config=None, detector=None):
        self.config = config or ModemConfig()
        self.detector = detector or ToneDetector()
        self.last_bin = None

    def due(self, tick_count):
        needed = self.config.analysis_size + self.config.analysis_lag
        return tick_count % self.config.decimation == 0 and tick_count >= needed

    def classify(self, window):
        samples = window.view(self.config.analysis_size, self.config.analysis_lag)
        self.last_bin = self.detector.detect(samples)
        return bin_to_bit(self.last_bin, self.config)


class ByteDecoder:
    """Groups bits into MSB-first bytes and maps each byte to a character by code point."""

    def __init__(self, config=None):
        self.sentinel = (config or ModemConfig()).sentinel
        self.reset()

    def reset(self):
        self._bits = []
        self._chars = []

    @property
    def text(self):
        return ''.join(self._chars)

    @property
    def pending_bits(self):
        return len(self._bits)

    def append(self, bit):
        """Adds one bit. Returns the decoded character when a byte completes, else None."""
        self._bits.append(1 if bit else 0)
        if len(self._bits) < 8:
            return None
        value = 0
        for b in self._bits:
            value = (value << 1) | b
        self._bits = []
        char = self._to_char(value)
        self._chars.append(char)
        return char

    def _to_char(self, value):
        char = chr(value)
        if char.isprintable() or char in PASSTHROUGH_CONTROLS:
            return char
        print(f"Byte 0x{value:02X} is not a printable character, substituting '{self.sentinel}'.")
        return self.sentinel


def decode_bits(bits, config=None):
    """Decodes a finished bit sequence in one go. Trailing partial bytes are dropped."""
    decoder = ByteDecoder(config)
    for bit in bits:
        decoder.append(bit)
    return decoder.text


# --- Reception ---

class ReceiverModem:
    """Decodes the flicker pattern from per-frame intensity samples.

    Call `tick()` once per camera frame to pull a sample from `sampler`, or
    `feed(sample)` from a push-style capture callback. Classification runs on
    every Kth tick regardless of framing. The start and end symbols only move
    the state between LISTENING and SYNCHRONIZED and delimit `message`.
    """

    def __init__(self, sampler=None, config=None, detector=None):
        self.config = (config or ModemConfig()).validate()
        self.sampler = sampler
        self.window = SlidingWindow(self.config.window_size)
        self.classifier = SymbolClassifier(self.config, detector)
        self.decoder = ByteDecoder(self.config)
        self.state = "LISTENING"
        self.tick_count = 0
        self._bits = []
        self._message_chars = []
        self._messages = []
        self._start_char = chr(self.config.start_symbol[0])
        self._end_char = chr(self.config.end_symbol[0])
        self._lock = threading.Lock()
        self._stop_flag = threading.Event()

    def tick(self):
        if self._stop_flag.is_set():
            return None
        if self.sampler is None:
            raise RuntimeError("No sampler attached, use feed() to push samples.")
        return self.feed(self.sampler())

    def feed(self, sample):
        """Pushes one intensity sample. Returns the bit classified on this tick, if any."""
        if self._stop_flag.is_set():
            return None
        value = self._sanitize(sample)
        with self._lock:
            self.window.push(value)
            self.tick_count += 1
            if not self.classifier.due(self.tick_count):
                return None
            bit = self.classifier.classify(self.window)
            self._bits.append(bit)
            char = self.decoder.append(bit)
            if char is not None:
                self._track_framing(char)
            return bit

    def stop(self):
        self._stop_flag.set()
        print("Receiver stopped.")

    @property
    def stopped(self):
        return self._stop_flag.is_set()

    @property
    def decoded(self):
        with self._lock:
            return self.decoder.text

    @property
    def message(self):
        """Payload of the message being received, or of the last one completed."""
        with self._lock:
            return ''.join(self._message_chars)

    @property
    def messages(self):
        with self._lock:
            return list(self._messages)

    @property
    def bits(self):
        with self._lock:
            return list(self._bits)

    def _sanitize(self, sample):
        try:
            value = float(sample)
        except (TypeError, ValueError, OverflowError):
            print(f"Tick {self.tick_count + 1}: no usable intensity sample ({sample!r}), using 0.")
            return 0.0
        if not math.isfinite(value):
            print(f"Tick {self.tick_count + 1}: non-finite intensity sample ({value}), using 0.")
            return 0.0
        return value

    def _track_framing(self, char):
        if char == self._start_char:
            if self.state == "SYNCHRONIZED":
                print("Start symbol received mid-message, discarding partial message.")
            print("Start symbol detected! Collecting message...")
            self.state = "SYNCHRONIZED"
            self._message_chars = []
        elif self.state == "SYNCHRONIZED":
            if char == self._end_char:
                self._messages.append(''.join(self._message_chars))
                self.state = "LISTENING"
                print(f"End symbol detected. Message: {self._messages[-1]}")
            else:
                self._message_chars.append(char)


# --- Tick Scheduling ---

def run_tick_loop(tick, rate=SAMPLE_RATE, stop_flag=None, max_ticks=None):
    """Calls `tick` at a fixed rate on the current thread.

    Runs until `stop_flag` is set, `tick` returns False or `max_ticks` calls
    have been made. Returns the number of calls made.
    """
    if stop_flag is None:
        stop_flag = threading.Event()
    interval = 1.0 / rate
    count = 0
    next_time = time.monotonic()
    while not stop_flag.is_set():
        if max_ticks is not None and count >= max_ticks:
            break
        result = tick()
        count += 1
        if result is False:
            break
        next_time += interval
        stop_flag.wait(max(0.0, next_time - time.monotonic()))
    return count
