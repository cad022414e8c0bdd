"""
Simple Backend Starter
Just run: python -m did_onboarding.start
"""

import os
import sys
import subprocess

from did_onboarding.config import config


def main():
    # Run from the project directory (parent of the package folder)
    project_dir = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    os.chdir(project_dir)

    print("=" * 70)
    print("Starting DID Onboarding server...")
    print(f"OCR backend: {config.OCR_BACKEND} | camera source: {config.CAMERA_SOURCE}")
    print("=" * 70)

    # CREATE_NEW_PROCESS_GROUP lets Ctrl+C reach uvicorn on Windows
    creationflags = subprocess.CREATE_NEW_PROCESS_GROUP if sys.platform == 'win32' else 0

    process = None
    try:
        process = subprocess.Popen([
            sys.executable, "-m", "uvicorn",
            "did_onboarding.main:app",
            "--host", config.API_HOST,
            "--port", str(config.API_PORT),
            "--log-level", config.API_LOG_LEVEL,
        ], creationflags=creationflags)
        process.wait()
    except KeyboardInterrupt:
        print("\n\nStopping server...")
        if process:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
        print("Server stopped.")


if __name__ == "__main__":
    main()
