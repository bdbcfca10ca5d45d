"""
Page probe using Playwright

A PageProbe observes a controlled page (a "surface") and performs single
primitive actions on it. The agent only talks to the abstract interface; the
Playwright implementation keeps a map of surface ids to pages and turns page
lifecycle callbacks into SurfaceEvents.
"""

import hashlib
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from webpilot.errors import ActionNotFoundError, NavigationTimeout, ProbeError, SurfaceGoneError
from webpilot.models import NextAction, PageSnapshot, SurfaceEvent
from webpilot.utils.logging import get_logger

logger = get_logger(__name__)

RESTRICTED_PREFIXES = ("chrome://", "edge://", "about:", "view-source:")

RESTRICTED_NOTICE = "[System] This page is restricted and cannot be inspected. Navigate to a URL immediately."


def is_restricted_url(url: Optional[str]) -> bool:
    return not url or url.startswith(RESTRICTED_PREFIXES)


def hash_content(*parts: Optional[str]) -> str:
    """Content hash used to tell whether an action changed the page."""
    return hashlib.md5("\n".join(p or "" for p in parts).encode("utf-8")).hexdigest()


def navigation_url(action: NextAction) -> Optional[str]:
    """Models put the URL in either `target` or `value`."""
    for candidate in (action.target, action.value):
        if candidate and ("://" in candidate or candidate.startswith("www.")):
            return candidate if "://" in candidate else f"https://{candidate}"
    return action.target or action.value


class PageProbe(ABC):
    """Observation and primitive actions on controlled pages."""

    def __init__(self):
        self._listeners: List[Callable[[SurfaceEvent], None]] = []

    def subscribe(self, callback: Callable[[SurfaceEvent], None]) -> None:
        """Deliver page lifecycle events (page_loaded, surface_closed) to callback."""
        self._listeners.append(callback)

    def _emit(self, event: SurfaceEvent) -> None:
        for callback in self._listeners:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"[PROBE] Event listener failed for {event.kind}: {e}")

    @abstractmethod
    async def get_snapshot(self, surface_id: str) -> PageSnapshot:
        ...

    async def content_hash(self, surface_id: str) -> Optional[str]:
        return (await self.get_snapshot(surface_id)).content_hash

    @abstractmethod
    async def current_url(self, surface_id: str) -> str:
        ...

    @abstractmethod
    async def navigate(self, surface_id: str, url: str) -> None:
        """Issue a navigation without waiting for the load to finish."""

    @abstractmethod
    async def wait_for_load(self, surface_id: str, timeout: float) -> bool:
        """True if the page reported load completion within timeout seconds."""

    @abstractmethod
    async def fill(self, surface_id: str, target: str, value: str) -> None:
        ...

    @abstractmethod
    async def read_value(self, surface_id: str, target: str) -> str:
        ...

    @abstractmethod
    async def click(self, surface_id: str, target: str) -> bool:
        """Click target. Returns True if it is a link (the click may navigate)."""

    @abstractmethod
    async def scroll(self, surface_id: str, target: Optional[str]) -> None:
        ...

    @abstractmethod
    async def select(self, surface_id: str, target: str, value: str) -> None:
        ...

    @abstractmethod
    async def wait_for_stability(self, surface_id: str, debounce: float, timeout: float) -> bool:
        """True if the DOM went quiet and readyState is complete before timeout."""

    @abstractmethod
    async def search_text(self, surface_id: str, query: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def inspect_selector(self, surface_id: str, selector: str) -> Dict[str, Any]:
        ...

    @abstractmethod
    async def inject_script(self, surface_id: str, code: str) -> None:
        ...

    async def perform(self, surface_id: str, action: NextAction) -> Dict[str, Any]:
        """
        Perform one primitive action.

        Returns:
            Outcome details ({"is_link": bool} for clicks)

        Raises:
            ActionNotFoundError: the target is not on the page
            SurfaceGoneError: the page was closed
            ProbeError: unsupported kind or any other page failure
        """
        kind = action.kind
        if kind == "navigate":
            url = navigation_url(action)
            if not url:
                raise ProbeError("navigate requires a URL")
            await self.navigate(surface_id, url)
            return {"url": url}
        if kind == "fill":
            await self.fill(surface_id, action.target or "", action.value or "")
            return {}
        if kind == "click":
            return {"is_link": await self.click(surface_id, action.target or "")}
        if kind == "scroll":
            await self.scroll(surface_id, action.target)
            return {}
        if kind == "select":
            await self.select(surface_id, action.target or "", action.value or "")
            return {}
        raise ProbeError(f"Unknown action: {kind}")


# --- page-side scripts ------------------------------------------------------

# Walks the DOM (including open shadow roots, each visited once), tags
# interactive elements with a stable data-ai-id and renders pseudo-HTML.
SNAPSHOT_JS = r"""
([maxText, maxLines]) => {
    const INTERACTIVE = 'a[href], button, input, textarea, select, summary, [role="button"], [role="link"], ' +
        '[role="checkbox"], [role="tab"], [role="menuitem"], [role="option"], [role="textbox"], ' +
        '[onclick], [contenteditable="true"]';
    const visited = new Set();
    const lines = [];
    const elements = [];
    let counter = window.__webpilotAiId || 0;

    const clean = (t, n) => (t || '').replace(/\s+/g, ' ').trim().substring(0, n);
    const attr = (t) => String(t).replace(/"/g, "'");

    const isVisible = (el) => {
        const style = window.getComputedStyle(el);
        if (style.display === 'none' || style.visibility === 'hidden' || style.opacity === '0') return false;
        const rect = el.getBoundingClientRect();
        return rect.width > 0 && rect.height > 0;
    };

    const visualLabel = (el) => {
        const root = el.getRootNode();
        if (el.id && root.querySelector) {
            const label = root.querySelector(`label[for="${CSS.escape(el.id)}"]`);
            if (label) return clean(label.innerText, 60);
        }
        const wrapping = el.closest('label');
        if (wrapping) return clean(wrapping.innerText, 60);
        if (el.getAttribute('aria-label')) return clean(el.getAttribute('aria-label'), 60);
        const by = el.getAttribute('aria-labelledby');
        if (by) {
            const ref = document.getElementById(by);
            if (ref) return clean(ref.innerText, 60);
        }
        const prev = el.previousElementSibling;
        if (prev && prev.innerText) return clean(prev.innerText, 60);
        return el.parentElement ? clean(el.parentElement.innerText, 60) : '';
    };

    const isHighlightedBlue = (el) => {
        const style = window.getComputedStyle(el);
        for (const color of [style.backgroundColor, style.borderColor, style.outlineColor]) {
            const m = (color || '').match(/\d+/g);
            if (!m || m.length < 3) continue;
            const [r, g, b] = m.map(Number);
            if (b > 150 && r < 100 && b - g > 30) return true;
        }
        return false;
    };

    const describe = (el) => {
        const tag = el.tagName.toLowerCase();
        const role = (el.getAttribute('role') || '').toLowerCase();
        const type = (el.getAttribute('type') || '').toLowerCase();
        if (tag === 'input' && type === 'hidden') return null;

        const isField = ['input', 'textarea', 'select'].includes(tag) || role === 'textbox' || el.isContentEditable;
        let text = '';
        if (!isField) {
            text = clean(el.innerText || el.value || el.title || el.getAttribute('aria-label'), 60);
            if (!text) {
                const img = el.querySelector && el.querySelector('img[alt]');
                if (img) text = clean(img.getAttribute('alt'), 60);
            }
            if (!text) return null;
        }

        if (!el.hasAttribute('data-ai-id')) {
            counter += 1;
            el.setAttribute('data-ai-id', String(counter));
        }
        const id = el.getAttribute('data-ai-id');
        const attrs = [`ai-id="${id}"`];
        if (role) attrs.push(`role="${role}"`);
        if (isField) {
            if (type) attrs.push(`type="${type}"`);
            const label = visualLabel(el);
            if (label) attrs.push(`visual_label="${attr(label)}"`);
            if (el.placeholder) attrs.push(`placeholder="${attr(clean(el.placeholder, 40))}"`);
            const value = el.isContentEditable ? el.innerText : el.value;
            if (value) attrs.push(`value="${attr(clean(value, 30))}"`);
            if (isHighlightedBlue(el)) attrs.push('visual_hint="highlighted-blue"');
            if (el.disabled) attrs.push('disabled');
        } else if (tag === 'a' && el.href) {
            attrs.push(`href="${attr(el.getAttribute('href').substring(0, 80))}"`);
        }

        elements.push({
            ai_id: id,
            tag,
            role: isField ? 'input' : (role || (tag === 'a' ? 'link' : tag)),
            label: isField ? visualLabel(el) : text,
        });
        return isField ? `<${tag} ${attrs.join(' ')}>` : `<${tag} ${attrs.join(' ')}>${text}</${tag}>`;
    };

    const walk = (root) => {
        if (!root || visited.has(root) || lines.length >= maxLines) return;
        visited.add(root);

        if (root.nodeType === Node.ELEMENT_NODE) {
            const el = root;
            if (['SCRIPT', 'STYLE', 'NOSCRIPT', 'TEMPLATE'].includes(el.tagName)) return;
            if (el.matches(INTERACTIVE)) {
                if (isVisible(el)) {
                    const line = describe(el);
                    if (line) lines.push(line);
                }
            } else if (/^H[1-3]$/.test(el.tagName) && isVisible(el)) {
                const t = clean(el.innerText, 80);
                const tag = el.tagName.toLowerCase();
                if (t) lines.push(`<${tag}>${t}</${tag}>`);
            }
            if (el.shadowRoot) walk(el.shadowRoot);
        }

        for (let child = root.firstChild; child; child = child.nextSibling) {
            if (child.nodeType === Node.ELEMENT_NODE) walk(child);
        }
    };

    walk(document.body);
    window.__webpilotAiId = counter;

    return {
        url: window.location.href,
        title: document.title,
        text: clean(document.body ? document.body.innerText : '', maxText),
        dom_tree: lines.join('\n'),
        elements,
    };
}
"""

# Resolves a target key: ai-id first, then CSS selector, id, name, test id,
# aria-label and finally visible button/link text. Searches open shadow roots.
_FIND_ELEMENT = r"""
    const deepQuery = (root, selector) => {
        const found = root.querySelector(selector);
        if (found) return found;
        for (const host of root.querySelectorAll('*')) {
            if (host.shadowRoot) {
                const inner = deepQuery(host.shadowRoot, selector);
                if (inner) return inner;
            }
        }
        return null;
    };
    const tryQuery = (selector) => {
        try { return deepQuery(document, selector); } catch (e) { return null; }
    };
    const findElement = (key) => {
        if (key === null || key === undefined || key === '') return null;
        key = String(key).trim();
        const m = key.match(/ai-id\s*=\s*["']?([\w-]+)["']?/);
        if (m) key = m[1];
        const quoted = key.replace(/"/g, '\\"');
        return tryQuery(`[data-ai-id="${quoted}"]`)
            || tryQuery(key)
            || document.getElementById(key)
            || tryQuery(`[name="${quoted}"]`)
            || tryQuery(`[data-testid="${quoted}"]`)
            || tryQuery(`[aria-label="${quoted}"]`)
            || Array.from(document.querySelectorAll('button, a, input[type="submit"], [role="button"]'))
                .find((c) => (c.innerText || c.value || '').toLowerCase().trim().includes(key.toLowerCase()))
            || null;
    };
"""


def _with_finder(body: str) -> str:
    return body.replace("/*FIND_ELEMENT*/", _FIND_ELEMENT)


FILL_JS = _with_finder(r"""
([key, value]) => {
    /*FIND_ELEMENT*/
    const el = findElement(key);
    if (!el) return { found: false };
    el.focus();
    if (el.isContentEditable) {
        el.innerText = value;
    } else {
        const proto = el instanceof HTMLTextAreaElement ? HTMLTextAreaElement.prototype
            : el instanceof HTMLSelectElement ? HTMLSelectElement.prototype
            : HTMLInputElement.prototype;
        const descriptor = Object.getOwnPropertyDescriptor(proto, 'value');
        if (descriptor && descriptor.set) descriptor.set.call(el, value); else el.value = value;
    }
    for (const type of ['focus', 'input', 'change', 'blur']) {
        el.dispatchEvent(new Event(type, { bubbles: true }));
    }
    return { found: true };
}
""")

READ_VALUE_JS = _with_finder(r"""
(key) => {
    /*FIND_ELEMENT*/
    const el = findElement(key);
    if (!el) return null;
    return el.isContentEditable ? el.innerText : (el.value || '');
}
""")

CLICK_JS = _with_finder(r"""
(key) => {
    /*FIND_ELEMENT*/
    const el = findElement(key);
    if (!el) return { found: false };
    const rect = el.getBoundingClientRect();
    if (rect.bottom < 0 || rect.top > window.innerHeight) {
        el.scrollIntoView({ behavior: 'auto', block: 'center' });
    }
    for (const type of ['pointerover', 'mouseover', 'pointerdown', 'mousedown', 'pointerup', 'mouseup']) {
        const Ctor = type.startsWith('pointer') && window.PointerEvent ? PointerEvent : MouseEvent;
        el.dispatchEvent(new Ctor(type, { bubbles: true, cancelable: true }));
    }
    el.click();
    return { found: true, is_link: el.tagName === 'A' || !!el.closest('a[href]') };
}
""")

SCROLL_JS = _with_finder(r"""
(key) => {
    /*FIND_ELEMENT*/
    if (key && !['window', 'down', 'up'].includes(key)) {
        const el = findElement(key);
        if (el) {
            el.scrollIntoView({ behavior: 'auto', block: 'center' });
            return true;
        }
    }
    window.scrollBy(0, key === 'up' ? -500 : 500);
    return true;
}
""")

SELECT_JS = _with_finder(r"""
([key, value]) => {
    /*FIND_ELEMENT*/
    const el = findElement(key);
    if (!el) return { found: false };
    if (el.options) {
        const wanted = String(value).toLowerCase();
        const option = Array.from(el.options).find(
            (o) => o.value === value || (o.text || '').trim().toLowerCase() === wanted
        );
        el.value = option ? option.value : value;
    } else {
        el.value = value;
    }
    el.dispatchEvent(new Event('change', { bubbles: true }));
    return { found: true };
}
""")

STABILITY_JS = r"""
([debounceMs, maxWaitMs]) => new Promise((resolve) => {
    let lastMutation = Date.now();
    const observer = new MutationObserver(() => { lastMutation = Date.now(); });
    observer.observe(document.body || document.documentElement, {
        subtree: true, childList: true, attributes: true, characterData: true,
    });
    const cleanup = () => {
        observer.disconnect();
        clearInterval(interval);
        clearTimeout(timeoutId);
    };
    const interval = setInterval(() => {
        if (Date.now() - lastMutation > debounceMs && document.readyState === 'complete') {
            cleanup();
            resolve(true);
        }
    }, 100);
    const timeoutId = setTimeout(() => { cleanup(); resolve(false); }, maxWaitMs);
})
"""

SEARCH_TEXT_JS = r"""
(query) => {
    if (!query) return { error: 'Query is empty' };
    const maxResults = 10;
    const results = [];
    const lowerQuery = query.toLowerCase();
    const visited = new Set();

    const walk = (root) => {
        if (!root || results.length >= maxResults || visited.has(root)) return;
        visited.add(root);
        if (root.nodeType === Node.ELEMENT_NODE) {
            const el = root;
            if (['SCRIPT', 'STYLE', 'NOSCRIPT'].includes(el.tagName)) return;
            const style = window.getComputedStyle(el);
            if (style.display === 'none' || style.visibility === 'hidden') return;

            let content = '';
            for (const node of el.childNodes) {
                if (node.nodeType === Node.TEXT_NODE) {
                    const txt = node.textContent.trim();
                    if (txt.toLowerCase().includes(lowerQuery)) { content = txt; break; }
                }
            }
            if (!content && el.tagName === 'IMG' && (el.alt || '').toLowerCase().includes(lowerQuery)) {
                content = `[IMG alt="${el.alt}"]`;
            }
            if (!content && el.tagName === 'INPUT' && (el.placeholder || '').toLowerCase().includes(lowerQuery)) {
                content = `[INPUT ph="${el.placeholder}"]`;
            }
            if (content) {
                let selector = el.tagName.toLowerCase();
                if (el.id) selector += `#${el.id}`;
                if (typeof el.className === 'string') {
                    const classes = el.className.split(/\s+/).filter((c) => c.trim()).join('.');
                    if (classes) selector += `.${classes}`;
                }
                results.push({
                    tagName: el.tagName,
                    id: el.id,
                    className: typeof el.className === 'string' ? el.className : '[SVG/Complex]',
                    text: content.substring(0, 60),
                    selector,
                    inShadow: el.getRootNode() instanceof ShadowRoot,
                });
            }
            if (el.shadowRoot) walk(el.shadowRoot);
        }
        for (let child = root.firstChild; child; child = child.nextSibling) walk(child);
    };

    walk(document.body);
    return { tool: 'search', query, location: window.location.href, count: results.length, results };
}
"""

INSPECT_SELECTOR_JS = r"""
(selector) => {
    if (!selector) return { error: 'Selector is empty' };
    let el;
    try { el = document.querySelector(selector); } catch (e) { return { error: 'Invalid selector' }; }
    if (!el) return { error: 'Element not found' };

    const style = window.getComputedStyle(el);
    const parents = [];
    let curr = el.parentElement;
    for (let i = 0; i < 3 && curr; i++) {
        parents.push({ tagName: curr.tagName, id: curr.id, className: curr.className });
        curr = curr.parentElement;
    }
    return {
        tool: 'inspect',
        found: true,
        tagName: el.tagName,
        id: el.id,
        className: el.className,
        innerHTML_snippet: el.innerHTML.substring(0, 200).replace(/\n/g, ''),
        rect: { width: el.offsetWidth, height: el.offsetHeight },
        styles: { display: style.display, visibility: style.visibility, position: style.position, zIndex: style.zIndex },
        parents,
    };
}
"""

INJECT_JS = r"""
(code) => {
    const scriptEl = document.createElement('script');
    scriptEl.textContent = code;
    (document.head || document.documentElement).appendChild(scriptEl);
    scriptEl.remove();
}
"""


class PlaywrightPageProbe(PageProbe):
    """PageProbe over Playwright pages, addressed by surface id."""

    def __init__(self, max_text: int = 2500, max_lines: int = 400):
        super().__init__()
        self.max_text = max_text
        self.max_lines = max_lines
        self._pages: Dict[str, Page] = {}
        self._counter = 0

    def register(self, page: Page, surface_id: Optional[str] = None) -> str:
        """
        Put a page under control.

        Args:
            page: Playwright page
            surface_id: Explicit id (a generated "tab-N" id if None)

        Returns:
            The surface id used in every other call
        """
        self._counter += 1
        sid = surface_id or f"tab-{self._counter}"
        self._pages[sid] = page

        page.on("load", lambda *_: self._emit(SurfaceEvent(kind="page_loaded", surface_id=sid, payload={"url": page.url})))
        page.on("close", lambda *_: self._on_close(sid))
        logger.info(f"[PROBE] Registered surface {sid}")
        return sid

    def _on_close(self, surface_id: str) -> None:
        self._pages.pop(surface_id, None)
        self._emit(SurfaceEvent(kind="surface_closed", surface_id=surface_id))

    def get_page(self, surface_id: str) -> Page:
        page = self._pages.get(surface_id)
        if page is None or page.is_closed():
            raise SurfaceGoneError(surface_id)
        return page

    async def _evaluate(self, surface_id: str, script: str, arg: Any = None) -> Any:
        page = self.get_page(surface_id)
        try:
            return await page.evaluate(script, arg)
        except PlaywrightError as e:
            if page.is_closed():
                raise SurfaceGoneError(surface_id) from e
            raise ProbeError(str(e)) from e

    async def current_url(self, surface_id: str) -> str:
        return self.get_page(surface_id).url

    async def get_snapshot(self, surface_id: str) -> PageSnapshot:
        page = self.get_page(surface_id)
        url = page.url

        if is_restricted_url(url):
            return PageSnapshot(
                url=url,
                text=RESTRICTED_NOTICE,
                restricted=True,
                content_hash=hash_content(url),
            )

        data = await self._evaluate(surface_id, SNAPSHOT_JS, [self.max_text, self.max_lines]) or {}
        snapshot = PageSnapshot(
            url=data.get("url") or url,
            title=data.get("title") or "",
            text=data.get("text") or "",
            dom_tree=data.get("dom_tree") or "",
            interactive_elements=data.get("elements") or [],
        )
        snapshot.content_hash = hash_content(snapshot.url, snapshot.dom_tree, snapshot.text)
        logger.debug(
            f"[PROBE] Snapshot {surface_id}: {len(snapshot.interactive_elements)} elements, hash {snapshot.content_hash[:8]}"
        )
        return snapshot

    async def navigate(self, surface_id: str, url: str) -> None:
        page = self.get_page(surface_id)
        try:
            # "commit" returns as soon as the navigation starts; load completion
            # arrives later as a page_loaded event
            await page.goto(url, wait_until="commit", timeout=15000)
        except PlaywrightTimeoutError as e:
            raise NavigationTimeout(f"Navigation to {url} did not start: {e}") from e
        except PlaywrightError as e:
            if page.is_closed():
                raise SurfaceGoneError(surface_id) from e
            raise ProbeError(f"Failed to navigate to {url}: {e}") from e
        logger.info(f"[PROBE] Navigating {surface_id} to {url}")

    async def wait_for_load(self, surface_id: str, timeout: float) -> bool:
        page = self.get_page(surface_id)
        try:
            await page.wait_for_load_state("load", timeout=timeout * 1000)
            return True
        except PlaywrightTimeoutError:
            return False
        except PlaywrightError as e:
            if page.is_closed():
                raise SurfaceGoneError(surface_id) from e
            return False

    async def fill(self, surface_id: str, target: str, value: str) -> None:
        result = await self._evaluate(surface_id, FILL_JS, [target, value])
        if not result or not result.get("found"):
            raise ActionNotFoundError(target)

    async def read_value(self, surface_id: str, target: str) -> str:
        value = await self._evaluate(surface_id, READ_VALUE_JS, target)
        if value is None:
            raise ActionNotFoundError(target)
        return str(value)

    async def click(self, surface_id: str, target: str) -> bool:
        result = await self._evaluate(surface_id, CLICK_JS, target)
        if not result or not result.get("found"):
            raise ActionNotFoundError(target)
        return bool(result.get("is_link"))

    async def scroll(self, surface_id: str, target: Optional[str]) -> None:
        await self._evaluate(surface_id, SCROLL_JS, target)

    async def select(self, surface_id: str, target: str, value: str) -> None:
        result = await self._evaluate(surface_id, SELECT_JS, [target, value])
        if not result or not result.get("found"):
            raise ActionNotFoundError(target)

    async def wait_for_stability(self, surface_id: str, debounce: float, timeout: float) -> bool:
        try:
            return bool(
                await self._evaluate(surface_id, STABILITY_JS, [int(debounce * 1000), int(timeout * 1000)])
            )
        except SurfaceGoneError:
            raise
        except ProbeError as e:
            # Typically the execution context was destroyed by a navigation
            logger.debug(f"[PROBE] Stability wait interrupted: {e}")
            return False

    async def search_text(self, surface_id: str, query: str) -> Dict[str, Any]:
        return await self._evaluate(surface_id, SEARCH_TEXT_JS, query) or {}

    async def inspect_selector(self, surface_id: str, selector: str) -> Dict[str, Any]:
        return await self._evaluate(surface_id, INSPECT_SELECTOR_JS, selector) or {}

    async def inject_script(self, surface_id: str, code: str) -> None:
        await self._evaluate(surface_id, INJECT_JS, code)
        logger.info(f"[PROBE] Injected script into {surface_id}")
