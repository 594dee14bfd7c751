"""JavaScript injected into the embedded page.

Every script is guarded by a ``window.__socialhub*`` marker so running it again
in the same document (init script plus an explicit evaluate on attach) leaves a
single installed copy.
"""

from __future__ import annotations

import json
from typing import Any

INVOKE_BINDING = "__socialhubInvoke"
TITLE_BINDING = "__socialhubTitle"
PRIVACY_STYLE_ATTR = "data-socialhub-privacy"
THEME_STYLE_ID = "socialhub-theme"

DEFAULT_TITLE_POLL_MS = 2000


_RUNTIME_JS = """
(() => {
  if (window.__socialhub) return;
  const listeners = {};
  let seq = 0;
  window.__socialhub = {
    listen(name, cb) {
      (listeners[name] = listeners[name] || []).push(cb);
      return () => {
        listeners[name] = (listeners[name] || []).filter((fn) => fn !== cb);
      };
    },
    emit(name, payload) {
      let delivered = 0;
      for (const cb of (listeners[name] || []).slice()) {
        try { cb(payload); delivered += 1; } catch (err) { console.error('[socialhub] listener', name, err); }
      }
      return delivered;
    },
    invoke(name, payload) {
      const bridge = window.__INVOKE_BINDING__;
      if (typeof bridge !== 'function') {
        return Promise.reject(new Error('socialhub bridge unavailable'));
      }
      seq += 1;
      return bridge({ kind: 'command', name, payload: payload || {}, id: String(seq) }).then((reply) => {
        if (reply && reply.ok) return reply.value;
        throw new Error((reply && reply.error) || 'command failed');
      });
    },
  };
  window.__socialhub.listen('navigate', (hash) => {
    if (typeof hash === 'string') window.location.hash = hash;
  });
})();
"""

_NOTIFICATION_SHIM_JS = """
(() => {
  if (window.__socialhubNotificationShim) return;
  const Original = window.Notification;
  let enabled = true;

  function ShimNotification(title, options) {
    const opts = options || {};
    if (enabled) {
      window.__socialhub.invoke('show_notification', {
        title: String(title || ''),
        body: String(opts.body || ''),
        icon: String(opts.icon || ''),
        tag: String(opts.tag || ''),
      }).catch((err) => console.error('[socialhub] notification', err));
    }
    this.title = String(title || '');
    this.body = String(opts.body || '');
    this.tag = String(opts.tag || '');
    this.onclick = null;
    this.onclose = null;
  }
  ShimNotification.prototype.close = function () {};
  ShimNotification.prototype.addEventListener = function () {};
  ShimNotification.prototype.removeEventListener = function () {};
  Object.defineProperty(ShimNotification, 'permission', {
    get: () => (Original ? Original.permission : 'granted'),
  });
  ShimNotification.requestPermission = Original && Original.requestPermission
    ? Original.requestPermission.bind(Original)
    : () => Promise.resolve('granted');

  try {
    Object.defineProperty(window, 'Notification', {
      value: ShimNotification,
      writable: true,
      configurable: true,
    });
  } catch (err) {
    console.error('[socialhub] notification shim not installed', err);
    return;
  }
  window.__socialhub.listen('toggle-notifications', (value) => {
    enabled = Boolean(value);
  });
  window.__socialhubNotificationShim = true;
})();
"""

_TITLE_OBSERVER_JS = """
(() => {
  if (window.__socialhubTitleObserver) return;
  const report = window.__TITLE_BINDING__;
  if (typeof report !== 'function') return;
  let lastTitle = null;
  const check = () => {
    const title = document.title || '';
    if (title === lastTitle) return;
    lastTitle = title;
    report(title).catch(() => {});
  };
  const observer = new MutationObserver(check);
  const attach = () => {
    const node = document.querySelector('title');
    if (node) observer.observe(node, { childList: true, characterData: true, subtree: true });
    if (document.head) observer.observe(document.head, { childList: true });
    check();
  };
  if (document.readyState === 'loading') {
    document.addEventListener('DOMContentLoaded', attach, { once: true });
  } else {
    attach();
  }
  const timer = setInterval(check, __POLL_MS__);
  window.addEventListener('pagehide', () => {
    clearInterval(timer);
    observer.disconnect();
  }, { once: true });
  window.__socialhubTitleObserver = true;
})();
"""

_SHORTCUTS_JS = """
(() => {
  if (window.__socialhubShortcuts) return;
  const inputActive = () => {
    const active = document.activeElement;
    if (!active) return false;
    const tag = active.tagName.toLowerCase();
    return tag === 'input' || tag === 'textarea' || active.getAttribute('contenteditable') === 'true';
  };
  const send = (action, data) => {
    window.__socialhub.invoke('handle_shortcut', { action, data: data || {} })
      .catch((err) => console.error('[socialhub] shortcut', action, err));
  };
  document.addEventListener('keydown', (event) => {
    if (inputActive()) return;
    const ctrl = event.ctrlKey || event.metaKey;
    const key = String(event.key || '').toLowerCase();
    if (ctrl && event.shiftKey && key === 'm') {
      event.preventDefault();
      send('mute');
      return;
    }
    if (ctrl && key === 'n') {
      event.preventDefault();
      send('new-message');
      return;
    }
    if (ctrl && key >= '1' && key <= '9') {
      event.preventDefault();
      send('switch-conversation', { index: parseInt(key, 10) });
    }
  });
  window.__socialhubShortcuts = true;
})();
"""

APPLY_PRIVACY_STYLES_JS = """
([attr, rules]) => {
  document.querySelectorAll(`style[${attr}]`).forEach((node) => node.remove());
  const parent = document.head || document.documentElement;
  for (const rule of rules) {
    const style = document.createElement('style');
    style.setAttribute(attr, rule.feature);
    style.textContent = rule.css;
    parent.appendChild(style);
  }
  return document.querySelectorAll(`style[${attr}]`).length;
}
"""

SET_THEME_JS = """
([id, css]) => {
  let style = document.getElementById(id);
  if (!style) {
    style = document.createElement('style');
    style.id = id;
    (document.head || document.documentElement).appendChild(style);
  }
  style.textContent = css;
  return true;
}
"""

REMOVE_THEME_JS = """
([id]) => {
  const style = document.getElementById(id);
  if (style) style.remove();
  return Boolean(style);
}
"""

EMIT_EVENT_JS = """
([name, payload]) => (window.__socialhub ? window.__socialhub.emit(name, payload) : 0)
"""


def build_init_script(*, shortcuts: bool = True, title_poll_ms: int = DEFAULT_TITLE_POLL_MS) -> str:
    """Compose the document-start script for one platform's browser context."""
    parts = [
        _RUNTIME_JS.replace("__INVOKE_BINDING__", INVOKE_BINDING),
        _NOTIFICATION_SHIM_JS,
        _TITLE_OBSERVER_JS.replace("__TITLE_BINDING__", TITLE_BINDING).replace(
            "__POLL_MS__", str(max(250, int(title_poll_ms)))
        ),
    ]
    if shortcuts:
        parts.append(_SHORTCUTS_JS)
    return "\n".join(parts)


def event_args(name: str, payload: Any) -> list[Any]:
    # Round-trip through JSON so only plain data crosses into the page.
    return [name, json.loads(json.dumps(payload, ensure_ascii=False))]
