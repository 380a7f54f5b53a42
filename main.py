# main.py
#
# Command line front end for the optical modem. It can print the frame and
# waveform for a message, play it back in real time, decode a recorded list
# of intensity samples, or run a simulated screen-to-camera loopback with
# added noise.
#
# Dependencies:
# pip install numpy

import argparse
import threading

import numpy as np

from flickerlink.modem import (
    ModemConfig,
    ReceiverModem,
    TransmitterModem,
    frame_message,
    run_tick_loop,
    text_to_waveform,
    waveform_to_levels,
    SAMPLE_RATE,
)


def _bit_string(bits):
    return ''.join(str(int(b)) for b in bits)


def read_samples(path):
    """Reads one intensity per line. Blank or unparseable lines come back as None."""
    samples = []
    with open(path, encoding='utf-8') as f:
        for line in f:
            line = line.strip()
            try:
                samples.append(float(line))
            except ValueError:
                samples.append(None)
    return samples


def simulate_channel(text, config, noise=0.0, seed=None):
    """Renders `text` as screen levels and adds Gaussian camera noise.

    The screen holds its low level for `analysis_lag` extra frames so a lagged
    receiver still gets to classify the last bit.
    """
    levels = waveform_to_levels(text_to_waveform(text, config), config)
    levels = np.concatenate([levels, np.full(config.analysis_lag, config.low_level, dtype=np.float32)])
    if noise > 0:
        rng = np.random.default_rng(seed)
        levels = levels + rng.normal(0.0, noise, levels.size).astype(np.float32)
    return np.clip(levels, 0.0, 1.0)


def _print_result(receiver):
    print(f"Decoded stream: {receiver.decoded!r}")
    print(f"Message: {receiver.message!r}")


def encode_command(args, config):
    bits = frame_message(args.message, config)
    waveform = text_to_waveform(args.message, config)
    print(f"Frame ({bits.size} bits): {_bit_string(bits)}")
    print(f"Waveform ({waveform.size} samples): {_bit_string(waveform)}")
    return 0


def send_command(args, config):
    transmitter = TransmitterModem(config)
    transmitter.start(args.message)
    stop_flag = threading.Event()

    def tick():
        if transmitter.tick() is None:
            return False
        print(f"{transmitter.level:.2f}")
        return True

    try:
        run_tick_loop(tick, args.rate, stop_flag)
    except KeyboardInterrupt:
        print("\nStopping sender.")
        stop_flag.set()
        transmitter.stop()
    return 0


def decode_command(args, config):
    receiver = ReceiverModem(config=config)
    for sample in read_samples(args.path):
        receiver.feed(sample)
    _print_result(receiver)
    return 0


def loopback_command(args, config):
    receiver = ReceiverModem(config=config)
    for sample in simulate_channel(args.message, config, args.noise, args.seed):
        receiver.feed(sample)
    _print_result(receiver)
    return 0 if receiver.message == args.message else 1


def build_parser():
    parser = argparse.ArgumentParser(description="Screen-to-camera BFSK modem")
    parser.add_argument("--samples-per-bit", type=int, default=None)
    parser.add_argument("--symbol-samples-per-bit", type=int, default=None)
    parser.add_argument("--lag", type=int, default=None, dest="analysis_lag")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("encode", help="Print the frame bits and waveform for a message")
    p.add_argument("message")
    p.set_defaults(func=encode_command)

    p = sub.add_parser("send", help="Play a message back in real time, one level per tick")
    p.add_argument("message")
    p.add_argument("--rate", type=float, default=SAMPLE_RATE)
    p.set_defaults(func=send_command)

    p = sub.add_parser("decode", help="Decode a file with one intensity sample per line")
    p.add_argument("path")
    p.set_defaults(func=decode_command)

    p = sub.add_parser("loopback", help="Encode, add noise and decode a message")
    p.add_argument("message")
    p.add_argument("--noise", type=float, default=0.0)
    p.add_argument("--seed", type=int, default=None)
    p.set_defaults(func=loopback_command)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    overrides = {name: getattr(args, name)
                 for name in ("samples_per_bit", "symbol_samples_per_bit", "analysis_lag")
                 if getattr(args, name) is not None}
    # The receiver classifies once per payload bit, symbols included unless overridden
    if args.samples_per_bit is not None:
        overrides["decimation"] = args.samples_per_bit
        overrides.setdefault("symbol_samples_per_bit", args.samples_per_bit)
    try:
        config = ModemConfig(**overrides).validate()
    except ValueError as e:
        print(f"Error: {e}")
        return 2
    return args.func(args, config)


if __name__ == '__main__':
    raise SystemExit(main())
