import sys
import subprocess


def main() -> None:
    if len(sys.argv) < 2:
        print("Usage: loadfleetctl <execute|kill> [args...]")
        sys.exit(1)

    subcommand = sys.argv[1]
    subcommand_args = sys.argv[2:]

    cmd = [sys.executable, "-m", f"loadfleet.cli.{subcommand}"] + subcommand_args
    sys.exit(subprocess.call(cmd))


if __name__ == "__main__":
    main()
