"""Despacho de notificaciones salientes al staff (mejor esfuerzo).

Las notificaciones se encolan y un hilo en segundo plano las envía por POST
al webhook configurado (p. ej. un puente de mensajería). Un fallo de envío se
registra en el log y se descarta: nunca afecta a la operación que lo originó.
"""

import logging
import queue
import threading
import time
from typing import Optional
import requests
from config import get_settings

logger = logging.getLogger(__name__)

NOTIFY_TYPES = ('kyc', 'withdrawal', 'deposit', 'dispute', 'risk_alert', 'custom')


class Notifier:
    """Cola de notificaciones con un único hilo consumidor."""
    def __init__(self, webhook_url: str, timeout: float = 3, max_retries: int = 2):
        self.webhook_url = webhook_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.queue: "queue.Queue[dict]" = queue.Queue()
        self._worker: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    # submit: Encola la notificación sin bloquear; arranca el hilo si hace falta.
    def submit(self, kind: str, title: str, message: str):
        if kind not in NOTIFY_TYPES:
            kind = 'custom'
        self.queue.put({'type': kind, 'title': title, 'message': message})
        self._ensure_worker()

    def _ensure_worker(self):
        with self._lock:
            if self._worker is None or not self._worker.is_alive():
                self._worker = threading.Thread(target=self._run, name='notifier', daemon=True)
                self._worker.start()

    def _run(self):
        while True:
            event = self.queue.get()
            try:
                self.deliver(event)
            finally:
                self.queue.task_done()

    # deliver: Envía un evento con reintentos. Devuelve True si fue aceptado.
    def deliver(self, event: dict) -> bool:
        if not self.webhook_url:
            logger.debug("No notify webhook configured, dropping %s notification", event.get('type'))
            return False
        for attempt in range(self.max_retries + 1):
            try:
                resp = requests.post(self.webhook_url, json=event, timeout=self.timeout)
                resp.raise_for_status()
                return True
            except requests.RequestException as e:
                logger.warning("Notify attempt %d failed for %s: %s", attempt + 1, event.get('type'), e)
                time.sleep(0.2 * (attempt + 1))
        logger.error("Dropping %s notification after %d attempts", event.get('type'), self.max_retries + 1)
        return False


_notifier: Optional[Notifier] = None


# get_notifier: Devuelve (creándolo si falta) el notificador del proceso.
def get_notifier() -> Notifier:
    global _notifier
    if _notifier is None:
        settings = get_settings()
        _notifier = Notifier(settings.notify_webhook_url, settings.request_timeout, settings.max_retries)
    return _notifier


# notify_admin: Punto de entrada usado por el núcleo. Nunca lanza excepciones.
def notify_admin(kind: str, title: str, message: str):
    try:
        get_notifier().submit(kind, title, message)
    except Exception:
        logger.exception("Could not enqueue %s notification", kind)
