from __future__ import annotations

import base64
import html
import json
import re
from typing import Dict

_PLACEHOLDER = re.compile(r"\{\{([A-Z_]+)\}\}")

# Shared client-side collector: navigator/screen details posted back as JSON.
# Sent as text/plain so the browser issues a simple request (no CORS preflight).
_COLLECT_JS = """
  function collect() {
    var n = navigator, s = window.screen || {};
    var tz = null;
    try { tz = Intl.DateTimeFormat().resolvedOptions().timeZone; } catch (e) {}
    return {
      userAgent: n.userAgent,
      platform: n.platform,
      language: n.language,
      languages: n.languages,
      cookieEnabled: n.cookieEnabled,
      doNotTrack: n.doNotTrack,
      hardwareConcurrency: n.hardwareConcurrency,
      deviceMemory: n.deviceMemory,
      maxTouchPoints: n.maxTouchPoints,
      screen: { width: s.width, height: s.height, colorDepth: s.colorDepth, pixelRatio: window.devicePixelRatio },
      viewport: { width: window.innerWidth, height: window.innerHeight },
      timezone: tz,
      timezoneOffset: new Date().getTimezoneOffset(),
      referrer: document.referrer,
      collectedAt: new Date().toISOString()
    };
  }
  function send(url, body) {
    try {
      fetch(url, { method: 'POST', headers: { 'Content-Type': 'text/plain' }, body: JSON.stringify(body), keepalive: true });
    } catch (e) {}
  }
"""


def fill_placeholders(template: str, values: Dict[str, str]) -> str:
    """
    Replace ``{{NAME}}`` tokens. Unknown tokens are left untouched.
    """

    def sub(m: "re.Match[str]") -> str:
        return values.get(m.group(1), m.group(0))

    return _PLACEHOLDER.sub(sub, template)


def data_uri(image_bytes: bytes, mimetype: str) -> str:
    return f"data:{mimetype};base64,{base64.b64encode(image_bytes).decode('ascii')}"


def _common(base_url: str, tracking_id: str) -> Dict[str, str]:
    return {
        "SERVER_URL": html.escape(base_url),
        "SERVER_URL_JS": json.dumps(base_url),
        "TRACKING_ID": html.escape(tracking_id),
        "TRACKING_ID_JS": json.dumps(tracking_id),
    }


LANDING_TEMPLATE = """<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>Shared image</title>
    <style>
      body { margin: 0; background: #111; display: flex; align-items: center; justify-content: center; min-height: 100vh; }
      img.main { max-width: 100%; max-height: 100vh; }
      img.px { position: absolute; left: -9999px; width: 1px; height: 1px; }
    </style>
  </head>
  <body>
    <img class="main" src="{{IMAGE_SRC}}" alt="" />
    <img class="px" src="{{SERVER_URL}}/track-view/{{TRACKING_ID}}" alt="" />
    <script>
    (function () {
      var base = {{SERVER_URL_JS}}, id = {{TRACKING_ID_JS}};
""" + _COLLECT_JS + """
      window.addEventListener('load', function () {
        // Give the pixel request a head start so the view exists before it is enriched.
        setTimeout(function () {
          send(base + '/enhanced-tracking/' + id, collect());
          if (navigator.brave && navigator.brave.isBrave) {
            navigator.brave.isBrave().then(function (yes) {
              if (yes) { new Image().src = base + '/update-browser/' + id + '?browser=Brave'; }
            });
          }
        }, 500);
      });
    })();
    </script>
  </body>
</html>
"""

CLICKABLE_TEMPLATE = """<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>Image</title>
    <style>
      body { margin: 0; background: #fff; }
      .wrap { position: relative; display: inline-block; }
      .wrap img { display: block; max-width: 100vw; }
      .overlay { position: absolute; inset: 0; cursor: pointer; background: transparent; }
    </style>
  </head>
  <body>
    <div class="wrap">
      <img src="{{IMAGE_SRC}}" alt="" />
      <div class="overlay" id="overlay"></div>
    </div>
    <script>
    (function () {
      var base = {{SERVER_URL_JS}}, id = {{TRACKING_ID_JS}};
""" + _COLLECT_JS + """
      document.getElementById('overlay').addEventListener('click', function (ev) {
        send(base + '/track-click/' + id, {
          x: ev.clientX,
          y: ev.clientY,
          screenWidth: window.innerWidth,
          screenHeight: window.innerHeight,
          timestamp: new Date().toISOString()
        });
      });
      window.addEventListener('load', function () {
        setTimeout(function () { send(base + '/enhanced-tracking/' + id, collect()); }, 500);
      });
    })();
    </script>
  </body>
</html>
"""

# Saved to disk and opened locally, so everything is inlined.
DOWNLOADABLE_TEMPLATE = """<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8" />
    <meta name="viewport" content="width=device-width, initial-scale=1" />
    <title>{{TITLE}}</title>
    <style>
      html, body { margin: 0; height: 100%; background: #0e0e0e; }
      body { display: flex; align-items: center; justify-content: center; }
      img { max-width: 100%; max-height: 100%; }
    </style>
  </head>
  <body>
    <img src="data:{{IMAGE_MIME}};base64,{{IMAGE_DATA}}" alt="{{TITLE}}" />
    <script>
    (function () {
      var base = {{SERVER_URL_JS}}, id = {{TRACKING_ID_JS}};
""" + _COLLECT_JS + """
      new Image().src = base + '/stealth-track/' + id + '?t=' + Date.now();
      setTimeout(function () {
        var data = collect();
        data.openedFrom = location.protocol;
        send(base + '/stealth-track-data/' + id, data);
      }, 300);
    })();
    </script>
  </body>
</html>
"""


def landing_page(*, base_url: str, tracking_id: str, image_bytes: bytes, mimetype: str) -> str:
    values = _common(base_url, tracking_id)
    values["IMAGE_SRC"] = data_uri(image_bytes, mimetype)
    return fill_placeholders(LANDING_TEMPLATE, values)


def clickable_page(*, base_url: str, tracking_id: str, image_bytes: bytes, mimetype: str) -> str:
    values = _common(base_url, tracking_id)
    values["IMAGE_SRC"] = data_uri(image_bytes, mimetype)
    return fill_placeholders(CLICKABLE_TEMPLATE, values)


def downloadable_tracker(
    *, base_url: str, tracking_id: str, image_bytes: bytes, mimetype: str, title: str
) -> str:
    values = _common(base_url, tracking_id)
    values.update(
        {
            "IMAGE_DATA": base64.b64encode(image_bytes).decode("ascii"),
            "IMAGE_MIME": html.escape(mimetype),
            "TITLE": html.escape(title),
        }
    )
    return fill_placeholders(DOWNLOADABLE_TEMPLATE, values)
