import json
import os
import socket
import time

TIMEOUT = int(os.getenv("TIMEOUT_S", "120"))
POSTGRES_HOST = os.getenv("POSTGRES_HOST", "postgres")
POSTGRES_PORT = int(os.getenv("POSTGRES_PORT", "5432"))
REDIS_HOST = os.getenv("REDIS_HOST", "redis")
REDIS_PORT = int(os.getenv("REDIS_PORT", "6379"))
RABBITMQ_HOST = os.getenv("RABBITMQ_HOST", "rabbitmq")
RABBITMQ_PORT = int(os.getenv("RABBITMQ_PORT", "5672"))


def tcp_ok(host: str, port: int) -> bool:
    try:
        s = socket.create_connection((host, port), timeout=2)
        s.close()
        return True
    except Exception:
        return False


def main() -> int:
    deadline = time.time() + TIMEOUT
    status = {}
    while time.time() < deadline:
        status = {
            "postgres": tcp_ok(POSTGRES_HOST, POSTGRES_PORT),
            "redis": tcp_ok(REDIS_HOST, REDIS_PORT),
            "rabbitmq": tcp_ok(RABBITMQ_HOST, RABBITMQ_PORT),
        }
        if all(status.values()):
            print(json.dumps({"ready": True, **status}))
            return 0
        time.sleep(2)
    print(json.dumps({"ready": False, **status}))
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
