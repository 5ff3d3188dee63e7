import logging
from datetime import datetime, timezone

from aiohttp import web

from payments import MalformedWebhookError, SignatureError
from provisioning import PaymentNotFound, Provisioner, SubscriberNotFound

logger = logging.getLogger(__name__)

PROVISIONER = web.AppKey("provisioner", Provisioner)


async def payment_webhook(request: web.Request) -> web.Response:
    raw = await request.read()
    signature = request.headers.get("X-Signature") or request.headers.get(
        "X-Platega-Signature"
    )
    try:
        outcome = await request.app[PROVISIONER].handle_webhook(raw, signature)
    except SignatureError:
        logger.error("Rejected webhook with invalid signature")
        return web.json_response({"error": "Invalid signature"}, status=401)
    except MalformedWebhookError as exc:
        logger.error("Malformed webhook: %s", exc)
        return web.json_response({"error": "Malformed payload"}, status=400)
    except PaymentNotFound as exc:
        logger.error("Payment not found: %s", exc)
        return web.json_response({"error": "Payment not found"}, status=404)
    except SubscriberNotFound as exc:
        logger.error("Subscriber not found: %s", exc)
        return web.json_response({"error": "User not found"}, status=404)
    except Exception:
        logger.exception("Webhook processing error")
        return web.json_response({"error": "Internal server error"}, status=500)
    return web.json_response({"success": True, "outcome": outcome})


async def health(request: web.Request) -> web.Response:
    return web.json_response(
        {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}
    )


async def payment_success(request: web.Request) -> web.Response:
    return web.Response(text="Оплата прошла успешно. Вернитесь в бот, ключ придёт сообщением.")


async def payment_failed(request: web.Request) -> web.Response:
    return web.Response(text="Оплата не прошла. Вернитесь в бот и попробуйте ещё раз.")


def create_app(provisioner: Provisioner) -> web.Application:
    app = web.Application()
    app[PROVISIONER] = provisioner
    app.router.add_post("/webhook/platega", payment_webhook)
    app.router.add_get("/health", health)
    app.router.add_get("/payment/success", payment_success)
    app.router.add_get("/payment/failed", payment_failed)
    return app


async def start_webhook_server(
    provisioner: Provisioner, host: str = "0.0.0.0", port: int = 3000
) -> web.AppRunner:
    runner = web.AppRunner(create_app(provisioner))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Webhook server listening on %s:%s", host, port)
    return runner
