import sounddevice as sd


def main() -> None:
    print("Input devices:")
    for index, d in enumerate(sd.query_devices()):
        if d["max_input_channels"] > 0:
            print(f"{index:3d}  {d['name']}  ch={d['max_input_channels']}  rate={d['default_samplerate']:.0f}")


if __name__ == "__main__":
    main()
