import os
import sys
import time


def main():
    """
    Usage: dummy_service.py [SECONDS] [EXIT_CODE]

    Prints its environment, writes a marker into its data mount when one is
    given, then works for SECONDS and exits with EXIT_CODE.
    """
    seconds = float(sys.argv[1]) if len(sys.argv) > 1 else 30
    exit_code = int(sys.argv[2]) if len(sys.argv) > 2 else 0

    print("Dummy service starting...")
    print(f"APP_ENV: {os.environ.get('APP_ENV')}")
    print(f"DB_HOST: {os.environ.get('DB_HOST')}")

    data = os.environ.get("CONDUCTOR_MOUNT_DATA")
    if data:
        with open(os.path.join(data, "marker"), "w") as f:
            f.write("written")

    deadline = time.time() + seconds
    i = 0
    while time.time() < deadline:
        print(f"Working... {i}")
        i += 1
        time.sleep(0.2)

    print("Dummy service finishing.")
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
