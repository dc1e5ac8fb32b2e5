"""
Envía un correo de prueba con el proveedor configurado.

Uso:
  python scripts/send_test_email.py destino@dominio.com
"""
import asyncio
import os
import sys

HERE = os.path.abspath(os.path.dirname(__file__))
ROOT = os.path.abspath(os.path.join(HERE, ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from pillatuvisa.config import settings  # noqa: E402
from pillatuvisa.mailer import Notifier, build_mail_provider  # noqa: E402


async def main(to: str) -> int:
    if not settings.mail.configured:
        print("Falta configurar el correo (MAIL_SERVER/MAIL_USERNAME/MAIL_PASSWORD o RESEND_API_KEY) en .env")
        return 2
    notifier = Notifier(build_mail_provider(settings.mail), settings)
    result = await notifier.deliver(
        to,
        "Prueba de correo | Pilla Tu Visa",
        "<p>Si estás leyendo esto, el envío de correo funciona.</p>",
        "Si estás leyendo esto, el envío de correo funciona.",
    )
    print(f"proveedor: {settings.mail.kind}  estado: {result['status']}")
    if result.get("error"):
        print("error:", result["error"])
    return 0 if result["status"] == "sent" else 1


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)
    sys.exit(asyncio.run(main(sys.argv[1])))
