import argparse
import os
import random
import secrets
import sys

import httpx


def _chunk_bytes(data: bytes, chunk_size: int) -> list[bytes]:
    return [data[i : i + chunk_size] for i in range(0, len(data), chunk_size)]


def main() -> int:
    parser = argparse.ArgumentParser(description="Upload a random file in shuffled chunks and read it back.")
    parser.add_argument("--base-url", default=os.getenv("VERIFY_BASE_URL", "http://127.0.0.1:8080"))
    parser.add_argument("--size", type=int, default=3 * 1024 * 1024 + 17)
    parser.add_argument("--chunk-size", type=int, default=1024 * 1024)
    args = parser.parse_args()

    base_url = args.base_url.rstrip("/")
    payload = secrets.token_bytes(args.size)
    chunks = _chunk_bytes(payload, args.chunk_size)
    upload_id = secrets.token_hex(16)
    order = list(range(len(chunks)))
    random.shuffle(order)

    print(f"Checking runtime at {base_url}")
    with httpx.Client(base_url=base_url, timeout=60.0) as client:
        try:
            health = client.get("/health")
        except Exception as exc:
            print(f"[FAIL] Could not connect to service: {exc}")
            return 1
        if health.status_code != 200:
            print(f"[FAIL] /health status={health.status_code}")
            return 1

        for index in order:
            resp = client.post(
                "/upload_chunk",
                data={"uploadId": upload_id, "chunkIndex": str(index)},
                files={"chunk": ("blob", chunks[index], "application/octet-stream")},
            )
            if resp.status_code != 200:
                print(f"[FAIL] chunk {index} status={resp.status_code} body={resp.text}")
                return 2
        print(f"[OK] staged {len(chunks)} chunks in order {order}")

        complete = client.post(
            "/upload_complete",
            data={"uploadId": upload_id, "chunkCount": str(len(chunks)), "fileName": "verify.bin"},
        )
        if complete.status_code != 200:
            print(f"[FAIL] complete status={complete.status_code} body={complete.text}")
            return 3
        file_id = complete.json()["id"]
        key = complete.json()["key"]
        print(f"[OK] completed as file {file_id}")

        info = client.get(f"/get/{file_id}", params={"key": key})
        print(f"[INFO] /get status={info.status_code} payload={info.text}")

        download = client.get(f"/download/{file_id}", params={"key": key})
        if download.status_code != 200 or download.content != payload:
            print(f"[FAIL] download status={download.status_code} bytes={len(download.content)}")
            return 4
        print("[OK] download matches the uploaded bytes")

        wrong = client.get(f"/download/{file_id}", params={"key": secrets.token_hex(32)})
        print(f"[INFO] wrong key status={wrong.status_code}")
        return 0 if wrong.status_code == 403 else 5


if __name__ == "__main__":
    sys.exit(main())
