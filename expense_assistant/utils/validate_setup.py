"""
Validate project setup: Python version, dependencies, GEMINI_API_KEY, storage path.
"""

import os
import sys

from dotenv import load_dotenv

REQUIRED_MODULES = [
    "pydantic",
    "tiktoken",
    "rich",
    "dotenv",
    "numpy",
    "langchain_google_genai",
    "langchain_core",
]


def check_setup() -> bool:
    """Check if the project is set up correctly (Gemini-only)."""
    print("Checking project setup...\n")
    issues = []

    if sys.version_info < (3, 10):
        issues.append("Python 3.10+ required (current: {}.{})".format(
            sys.version_info.major, sys.version_info.minor))
    else:
        print("✓ Python {}.{}.{}".format(
            sys.version_info.major, sys.version_info.minor, sys.version_info.micro))

    for name in REQUIRED_MODULES:
        try:
            __import__(name)
            print("✓ {} installed".format(name))
        except ImportError:
            issues.append("Missing package: {}".format(name))

    load_dotenv()
    api_key = os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
    if api_key:
        print("✓ GEMINI_API_KEY or GOOGLE_API_KEY found")
    else:
        issues.append("Set GEMINI_API_KEY (or GOOGLE_API_KEY) in .env")

    storage_path = os.getenv("STORAGE_PATH")
    if storage_path:
        directory = os.path.dirname(os.path.abspath(storage_path))
        if os.access(directory, os.W_OK) or not os.path.exists(directory):
            print("✓ STORAGE_PATH {} usable".format(storage_path))
        else:
            issues.append("STORAGE_PATH directory is not writable: {}".format(directory))
    else:
        print("• STORAGE_PATH not set: receipts and chats stay in memory")

    print("\n" + "=" * 50)
    if issues:
        print("❌ Setup issues:")
        for i in issues:
            print("  • {}".format(i))
        print("\nFix: pip install -e . ; set GEMINI_API_KEY in .env")
        return False
    print("✓ Setup OK. Run: python demos/demo_cli.py")
    return True


def main() -> None:
    sys.exit(0 if check_setup() else 1)


if __name__ == "__main__":
    main()
