"""Run the launcher."""

from webui_launcher.__main__ import main

if __name__ == "__main__":
    main()
