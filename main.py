# main.py
#
# Interactive front end for the fskwaves modem: send and receive text through
# the sound card, convert text to and from WAV files, chat on several
# frequency channels at once, and replay the interference experiments.
#
# Dependencies:
# pip install sounddevice soundfile numpy

import logging

from fskwaves.channels import ChannelAnalyzer, MultiChannelChat, predefined_channels
from fskwaves.errors import FSKError
from fskwaves.modem import Modem, default_config, ultrasonic_config
from fskwaves.scenarios import SCENARIOS
from fskwaves.transport import Receiver, Transmitter
from fskwaves.wav import read_wav, write_wav

CHAT_ORDER = 2
CHAT_BAUD_RATE = 100


def choose_config():
    answer = input("Use the ultrasonic band (22 kHz)? [y/N] ").strip().lower()
    return ultrasonic_config() if answer == 'y' else default_config()


def start_sending():
    text = input("Enter text to send: ")
    if not text:
        print("Input is empty.")
        return
    transmitter = Transmitter(Modem(choose_config()))
    try:
        transmitter.transmit(text.encode('utf-8'))
        print("Transmission complete.")
    except FSKError as e:
        print(f"Error: {e}")
    except KeyboardInterrupt:
        transmitter.cancel()
        print("\nStopping sender.")


def start_receiving():
    def on_data(data):
        print(f"Received: {data.decode('utf-8', errors='replace')!r}")

    receiver = Receiver(Modem(choose_config()), on_data)
    try:
        receiver.start()
    except FSKError as e:
        print(f"Error: {e}")
        return
    print("\nListening for data... Press Enter to stop.")
    try:
        input()
    except KeyboardInterrupt:
        pass
    finally:
        receiver.close()
    print("Receiver stopped.")


def encode_to_wav():
    text = input("Enter text to encode: ")
    path = input("Output file [message.wav]: ").strip() or "message.wav"
    modem = Modem(choose_config())
    signal = modem.encode(text.encode('utf-8'))
    write_wav(path, signal, modem.config.sample_rate)
    print(f"Encoded {len(text.encode('utf-8'))} bytes into {len(signal)} samples -> {path}")


def decode_from_wav():
    path = input("WAV file to decode: ").strip()
    modem = Modem(choose_config())
    try:
        samples, sample_rate = read_wav(path)
    except FSKError as e:
        print(f"Error: {e}")
        return
    if sample_rate != modem.config.sample_rate:
        print(f"Warning: file is {sample_rate} Hz, modem expects {modem.config.sample_rate} Hz.")
    result = modem.decode_with_confidence(samples)
    print(f"Decoded: {result.data.decode('utf-8', errors='replace')!r}")
    print(f"Mean symbol confidence: {result.mean_confidence:.2f}")


def print_channels():
    for channel in predefined_channels():
        print(f"  {channel.id}: {channel.name}")


def start_chat():
    username = input("Your name: ").strip() or "anon"

    def on_message(channel_id, user, text):
        print(f"\n[ch {channel_id}] {user}: {text}")

    channels = {channel.id: channel for channel in predefined_channels()}
    print("Channels:")
    print_channels()
    print("Commands: /join N, /leave N, /all TEXT, /list, /quit, or N TEXT to send on channel N")

    with MultiChannelChat(username, on_message) as chat:
        while True:
            try:
                line = input("> ").strip()
            except (KeyboardInterrupt, EOFError):
                break
            if not line:
                continue
            command, _, rest = line.partition(' ')
            try:
                if command == '/quit':
                    break
                elif command == '/list':
                    print(f"Active channels: {chat.active_channels()}")
                elif command == '/join':
                    chat.join_channel(channels[int(rest)], CHAT_ORDER, CHAT_BAUD_RATE)
                    print(f"Joined channel {rest}.")
                elif command == '/leave':
                    chat.leave_channel(int(rest))
                    print(f"Left channel {rest}.")
                elif command == '/all':
                    result = chat.broadcast_message(rest)
                    for channel_id, error in result.failed.items():
                        print(f"Channel {channel_id}: {error}")
                elif command.isdigit():
                    chat.send_message(int(command), rest)
                else:
                    print("Unknown command.")
            except (KeyError, ValueError):
                print("Unknown channel.")
            except FSKError as e:
                print(f"Error: {e}")
    print("Chat closed.")


def run_scenario():
    for number, scenario in SCENARIOS.items():
        print(f"  {number}: {scenario.__doc__.splitlines()[0]}")
    choice = input("Scenario: ").strip()
    if not choice.isdigit() or int(choice) not in SCENARIOS:
        print("Invalid scenario.")
        return

    result = SCENARIOS[int(choice)]()
    print(f"\n=== {result.name} ===")
    for outcome in result.outcomes:
        status = "ok" if outcome.success else "CORRUPTED"
        print(f"{outcome.label}: {outcome.decoded.decode('utf-8', errors='replace')!r} [{status}]")

    path = input("Save mixed signal to WAV (blank to skip): ").strip()
    if path:
        result.save(path)
        print(f"Mixed signal saved to {path}")


def scan_activity():
    analyzer = ChannelAnalyzer()
    try:
        analyzer.start_analysis()
    except FSKError as e:
        print(f"Error: {e}")
        return
    print("\nWatching 18-28 kHz... Press Enter to show activity, q then Enter to stop.")
    try:
        while input().strip().lower() != 'q':
            activity = analyzer.get_channel_activity()
            if not activity:
                print("No activity.")
            for band, level in sorted(activity.items()):
                print(f"  {band / 1000:.0f} kHz: {level:.2f}")
    except (KeyboardInterrupt, EOFError):
        pass
    finally:
        analyzer.stop()
    print("Analysis stopped.")


# --- Main Application Logic ---
def main():
    """Main function to run the CLI."""
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    print("--- FSK Acoustic Modem ---")
    actions = {
        '1': start_sending,
        '2': start_receiving,
        '3': encode_to_wav,
        '4': decode_from_wav,
        '5': start_chat,
        '6': run_scenario,
        '7': scan_activity,
    }
    while True:
        choice = input(
            "\nChoose an option:\n"
            "1. Send text\n2. Receive data\n3. Encode text to WAV\n4. Decode WAV\n"
            "5. Multi-channel chat\n6. Interference scenarios\n7. Scan channel activity\n8. Exit\n> "
        ).strip()
        if choice == '8':
            break
        action = actions.get(choice)
        if action is None:
            print("Invalid choice. Please enter a number from 1 to 8.")
            continue
        action()
    print("Goodbye!")


if __name__ == '__main__':
    main()
