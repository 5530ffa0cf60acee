# write_queue.py - file d'attente d'ecriture par cle de fichier
#
# Sans verrou, deux livreurs du meme magasin lisent [rec1], ajoutent chacun
# leur releve puis ecrivent: le dernier ecrasera l'autre.
# Ici chaque cle ("GLEIZE/2026-02", "global") a sa propre file FIFO:
# un seul read-modify-write en vol par cle, les autres cles ne sont jamais bloquees.
# Verrou local au process (pas de coordination entre plusieurs instances).
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, Optional


class WriteQueue:
    def __init__(self):
        self._mutex = threading.Lock()
        self._queues: Dict[str, Deque[threading.Event]] = {}

    def with_lock(self, key: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Execute `fn` en exclusion mutuelle pour `key`, dans l'ordre d'arrivee.
        Une exception de `fn` remonte a l'appelant et libere la place
        pour l'appel suivant.
        """
        turn = threading.Event()
        with self._mutex:
            waiters = self._queues.setdefault(key, deque())
            waiters.append(turn)
            if len(waiters) == 1:
                turn.set()
        turn.wait()
        try:
            return fn(*args, **kwargs)
        finally:
            self._release(key)

    def _release(self, key: str) -> None:
        with self._mutex:
            waiters = self._queues[key]
            waiters.popleft()
            if waiters:
                waiters[0].set()
            else:
                # plus personne sur cette cle: on nettoie
                del self._queues[key]

    def pending(self, key: Optional[str] = None) -> int:
        """Appels en cours + en attente (pour une cle, ou au total)."""
        with self._mutex:
            if key is not None:
                return len(self._queues.get(key, ()))
            return sum(len(q) for q in self._queues.values())

    def __len__(self) -> int:
        with self._mutex:
            return len(self._queues)
