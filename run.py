"""Run the supervisor."""

from ollama_supervisor.__main__ import main

if __name__ == "__main__":
    main()
