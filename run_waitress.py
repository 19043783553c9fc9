# run_waitress.py
# Sirve la API con Waitress (producción sin gunicorn, p.ej. Windows).

import os

from waitress import serve

from aikizi import create_app

if __name__ == "__main__":
    application = create_app()
    listen = os.getenv("LISTEN", "127.0.0.1:8000")
    threads = int(os.getenv("WAITRESS_THREADS", "8"))
    print(f"[Waitress] Sirviendo en http://{listen} (threads={threads})")
    serve(application, listen=listen, threads=threads)
