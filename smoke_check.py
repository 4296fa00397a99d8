#!/usr/bin/env python3
"""
Smoke check for a running photo frame intake service.
Exercises every endpoint once and reports what it found.

Usage: PHOTOFRAME_API_KEY=... python smoke_check.py [base_url]
"""

import os
import sys
from io import BytesIO

import requests

BASE_URL = sys.argv[1] if len(sys.argv) > 1 else os.environ.get("PHOTOFRAME_URL", "http://localhost:3001")
API_KEY = os.environ.get("PHOTOFRAME_API_KEY", "default-api-key-change-me")
AUTH_HEADERS = {"X-API-Key": API_KEY}
TIMEOUT = 10

# Smallest JPEG most decoders accept: SOI, a JFIF APP0 segment and EOI.
TINY_JPEG = bytes.fromhex(
    "ffd8ffe000104a46494600010101004800480000ffd9"
)

results = []


class CheckResult:
    def __init__(self, endpoint, method, status, message):
        self.endpoint = endpoint
        self.method = method
        self.status = status
        self.message = message

    def __str__(self):
        symbol = "+" if self.status == "PASS" else "-" if self.status == "FAIL" else "?"
        return f"[{symbol}] {self.method} {self.endpoint}: {self.message}"


def record(endpoint, method, status, message):
    result = CheckResult(endpoint, method, status, message)
    results.append(result)
    print(result)


def check_liveness():
    print("\n=== Liveness ===")
    try:
        response = requests.get(f"{BASE_URL}/api/test", timeout=TIMEOUT)
    except requests.RequestException as error:
        record("/api/test", "GET", "FAIL", f"Server not reachable: {error}")
        return False
    if response.status_code == 200 and response.json().get("status") == "ok":
        record("/api/test", "GET", "PASS", "Server is running")
        return True
    record("/api/test", "GET", "FAIL", f"Unexpected response: {response.status_code}")
    return False


def check_auth_required():
    print("\n=== Authentication ===")
    response = requests.get(f"{BASE_URL}/api/images", timeout=TIMEOUT)
    if response.status_code == 401:
        record("/api/images", "GET", "PASS", "Request without key rejected")
    else:
        record("/api/images", "GET", "FAIL", f"Expected 401, got {response.status_code}")


def list_images():
    response = requests.get(f"{BASE_URL}/api/images", headers=AUTH_HEADERS, timeout=TIMEOUT)
    response.raise_for_status()
    return response.json()


def check_upload():
    print("\n=== Upload ===")
    files = {"image": ("smoke-check.jpg", BytesIO(TINY_JPEG), "image/jpeg")}
    response = requests.post(
        f"{BASE_URL}/api/upload-image", files=files, headers=AUTH_HEADERS, timeout=TIMEOUT
    )
    if response.status_code != 200:
        record("/api/upload-image", "POST", "FAIL", f"Status {response.status_code}: {response.text}")
        return None
    filename = response.json().get("filename")
    record("/api/upload-image", "POST", "PASS", f"Stored as {filename}")
    return filename


def check_rejects_non_image():
    files = {"image": ("notes.txt", BytesIO(b"plain text"), "text/plain")}
    response = requests.post(
        f"{BASE_URL}/api/upload-image", files=files, headers=AUTH_HEADERS, timeout=TIMEOUT
    )
    if response.status_code == 400:
        record("/api/upload-image", "POST", "PASS", "Non-image upload rejected")
    else:
        record("/api/upload-image", "POST", "FAIL", f"Expected 400, got {response.status_code}")


def check_listing_contains(filename):
    print("\n=== Listing ===")
    names = [image["name"] for image in list_images()]
    if filename in names:
        record("/api/images", "GET", "PASS", f"{len(names)} images listed, upload present")
    else:
        record("/api/images", "GET", "FAIL", f"{filename} missing from listing")


def check_delete(filename):
    print("\n=== Delete ===")
    url = f"{BASE_URL}/api/delete-image"
    response = requests.delete(url, params={"name": filename}, headers=AUTH_HEADERS, timeout=TIMEOUT)
    if response.status_code == 200:
        record("/api/delete-image", "DELETE", "PASS", response.json().get("message", "deleted"))
    else:
        record("/api/delete-image", "DELETE", "FAIL", f"Status {response.status_code}")
        return

    again = requests.delete(url, params={"name": filename}, headers=AUTH_HEADERS, timeout=TIMEOUT)
    if again.status_code == 404:
        record("/api/delete-image", "DELETE", "PASS", "Second delete reports not found")
    else:
        record("/api/delete-image", "DELETE", "FAIL", f"Expected 404, got {again.status_code}")


def print_summary():
    passed = sum(1 for r in results if r.status == "PASS")
    failed = sum(1 for r in results if r.status == "FAIL")
    print("\n=== Summary ===")
    print(f"Passed: {passed}  Failed: {failed}")


def main():
    print(f"Checking {BASE_URL}")
    if not check_liveness():
        print_summary()
        return 1

    check_auth_required()
    filename = check_upload()
    check_rejects_non_image()
    if filename:
        check_listing_contains(filename)
        check_delete(filename)

    print_summary()
    return 1 if any(r.status == "FAIL" for r in results) else 0


if __name__ == "__main__":
    sys.exit(main())
