import numpy as np
import pytest
from unittest.mock import patch

from flickerlink.modem import (
    ByteDecoder,
    ModemConfig,
    SlidingWindow,
    SymbolClassifier,
    bin_to_bit,
    decode_bits,
    frame_message,
    tone_for_bit,
    SAMPLES_PER_BIT,
    WINDOW_SIZE,
)


def _bits(text):
    return [int(c) for c in text.replace(' ', '')]


def _window_with(*bits):
    window = SlidingWindow(WINDOW_SIZE)
    for bit in bits:
        for sample in tone_for_bit(bit, SAMPLES_PER_BIT):
            window.push(0.5 + 0.5 * sample)
    return window


class TestSymbolClassifier:
    """Test cases for bin lookup and per-symbol classification."""

    @pytest.mark.parametrize("bin_index,expected", [
        (3, 0), (4, 0), (5, 0), (6, 1), (7, 1), (8, 1),
        (0, 0), (1, 0), (2, 0), (9, 0), (100, 0),
    ])
    def test_bin_to_bit_default_table(self, bin_index, expected):
        """Test the default bin table and its fallback to 0."""
        assert bin_to_bit(bin_index) == expected

    def test_bin_to_bit_custom_table(self):
        """Test a configured bin table."""
        config = ModemConfig(bin_table={2: 1})
        assert bin_to_bit(2, config) == 1
        assert bin_to_bit(8, config) == 0

    def test_due_every_k_ticks(self):
        """Test that classification runs only on every Kth tick."""
        classifier = SymbolClassifier()
        assert [t for t in range(0, 65) if classifier.due(t)] == [16, 32, 48, 64]

    def test_due_waits_for_lagged_slice(self):
        """Test that a lagged slice isn't read before it holds real samples."""
        classifier = SymbolClassifier(ModemConfig(analysis_lag=16))
        assert not classifier.due(16)
        assert classifier.due(32)

    def test_classify_one(self):
        """Test classifying a window ending in tone 1."""
        classifier = SymbolClassifier()
        assert classifier.classify(_window_with(1)) == 1
        assert classifier.last_bin == 8

    def test_classify_zero(self):
        """Test classifying a window ending in tone 0."""
        classifier = SymbolClassifier()
        assert classifier.classify(_window_with(0)) == 0
        assert classifier.last_bin == 5

    def test_classify_lagged_slice(self):
        """Test that a lagged classifier reads the older tone."""
        classifier = SymbolClassifier(ModemConfig(analysis_lag=16))
        assert classifier.classify(_window_with(1, 0)) == 1
        assert classifier.classify(_window_with(0, 1)) == 0

    @pytest.mark.parametrize("text", ["Hi", "A", "Hello, World!", "0123456789", "~ !"])
    def test_round_trip_noise_free(self, text):
        """Test that exact tones classify and decode back to the framed text."""
        classifier = SymbolClassifier()
        bits = [classifier.classify(_window_with(bit)) for bit in frame_message(text)]
        assert decode_bits(bits) == "%" + text + "/"


class TestByteDecoder:
    """Test cases for regrouping bits into characters."""

    def test_emits_on_eighth_bit(self):
        """Test that a character appears only once 8 bits are in."""
        decoder = ByteDecoder()
        results = [decoder.append(bit) for bit in _bits("0100 1000")]
        assert results[:7] == [None] * 7
        assert results[7] == 'H'
        assert decoder.text == 'H'
        assert decoder.pending_bits == 0

    def test_msb_first(self):
        """Test big-endian bit order within each byte."""
        assert decode_bits(_bits("01001000 01101001")) == "Hi"

    def test_partial_byte_not_emitted(self):
        """Test that trailing bits short of a byte are held back."""
        decoder = ByteDecoder()
        for bit in _bits("01001000 0110"):
            decoder.append(bit)
        assert decoder.text == "H"
        assert decoder.pending_bits == 4
        assert decode_bits(_bits("01001000 0110")) == "H"

    def test_control_byte_uses_sentinel(self):
        """Test that a non-printable byte becomes the sentinel."""
        with patch('builtins.print') as mock_print:
            assert decode_bits(_bits("00000111")) == "?"
            mock_print.assert_called_once()
            assert "0x07" in mock_print.call_args[0][0]

    def test_custom_sentinel(self):
        """Test a configured sentinel character."""
        config = ModemConfig(sentinel='#')
        with patch('builtins.print'):
            assert decode_bits(_bits("00000000"), config) == "#"

    def test_whitespace_controls_pass_through(self):
        """Test that tab, newline and carriage return survive decoding."""
        assert decode_bits(_bits("00001001 00001010 00001101")) == "\t\n\r"

    def test_high_bytes_map_by_code_point(self):
        """Test that bytes above 0x7F decode to the matching code point."""
        assert decode_bits(_bits("11101001")) == "é"

    def test_reset(self):
        """Test clearing decoded text and pending bits."""
        decoder = ByteDecoder()
        for bit in _bits("01001000 01"):
            decoder.append(bit)
        decoder.reset()
        assert decoder.text == ""
        assert decoder.pending_bits == 0

    def test_truthy_values_count_as_one(self):
        """Test that numpy and bool bits are accepted."""
        bits = [np.uint8(b) for b in _bits("01101001")]
        assert decode_bits(bits) == "i"
        assert decode_bits([bool(b) for b in _bits("01101001")]) == "i"

    def test_decode_is_idempotent(self):
        """Test that decoding the same bits twice gives the same text."""
        bits = list(frame_message("Idempotent"))
        assert decode_bits(bits) == decode_bits(bits) == "%Idempotent/"

    def test_empty_bits(self):
        """Test decoding no bits at all."""
        assert decode_bits([]) == ""
