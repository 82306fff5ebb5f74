"""Dashboard HTML with inline CSS and vanilla JS."""


def get_dashboard_html() -> str:
    return """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Ticket Orchestrator</title>
<style>
  :root {
    --bg: #0d1117; --surface: #161b22; --border: #30363d;
    --text: #e6edf3; --text-muted: #8b949e; --text-dim: #6e7681;
    --queued: #8b949e; --active: #58a6ff; --completed: #3fb950;
    --escalated: #d29922; --failed: #f85149; --skipped: #6e7681;
  }
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Helvetica, Arial, sans-serif;
         background: var(--bg); color: var(--text); line-height: 1.5; }
  .container { max-width: 1040px; margin: 0 auto; padding: 24px 16px; }
  header { display: flex; justify-content: space-between; align-items: center;
           padding-bottom: 16px; border-bottom: 1px solid var(--border); margin-bottom: 24px; }
  header h1 { font-size: 20px; font-weight: 600; }
  header button { background: var(--surface); color: var(--text-muted); border: 1px solid var(--border);
                  padding: 4px 10px; border-radius: 4px; cursor: pointer; font-size: 12px; }
  h2 { font-size: 15px; margin: 24px 0 10px; }

  .summary { display: flex; gap: 16px; align-items: center; flex-wrap: wrap; margin-bottom: 12px; }
  .stat { display: flex; align-items: center; gap: 6px; font-size: 14px; }
  .dot { width: 10px; height: 10px; border-radius: 50%; display: inline-block; }
  .progress-bar { flex: 1; min-width: 120px; height: 8px; background: var(--surface);
                  border-radius: 4px; overflow: hidden; border: 1px solid var(--border); }
  .progress-bar .fill { height: 100%; background: var(--completed); }
  .slots { display: flex; gap: 8px; flex-wrap: wrap; font-size: 12px; color: var(--text-muted); }
  .slots code { background: var(--surface); padding: 2px 6px; border-radius: 4px; }

  .list { display: flex; flex-direction: column; gap: 2px; }
  .card { background: var(--surface); border: 1px solid var(--border); border-radius: 8px; padding: 10px 14px; }
  .card-header { display: flex; align-items: center; gap: 10px; }
  .badge { display: inline-block; padding: 2px 10px; border-radius: 12px; font-size: 11px;
           font-weight: 600; text-transform: uppercase; letter-spacing: 0.5px; }
  .title { font-weight: 600; font-size: 14px; }
  .id { font-size: 12px; color: var(--text-dim); font-family: monospace; }
  .details { margin-top: 4px; font-size: 13px; color: var(--text-muted); }
  .details code { background: var(--bg); padding: 1px 5px; border-radius: 3px; font-size: 12px; }
  .empty { padding: 16px; color: var(--text-muted); font-size: 13px; }
</style>
</head>
<body>
<div class="container">
  <header>
    <h1>Ticket Orchestrator</h1>
    <button onclick="load()">Refresh</button>
  </header>
  <div id="summary"></div>
  <h2>Escalations awaiting a decision</h2>
  <div id="escalations" class="list"></div>
  <h2>Review queue</h2>
  <div id="review" class="list"></div>
  <h2>Tickets</h2>
  <div id="tickets" class="list"></div>
</div>

<script>
const COLORS = {
  'queued': 'var(--queued)', 'assigned': 'var(--active)', 'planning': 'var(--active)',
  'implementing': 'var(--active)', 'gate-check': 'var(--active)', 'escalated': 'var(--escalated)',
  'completed': 'var(--completed)', 'failed': 'var(--failed)', 'skipped': 'var(--skipped)',
};

async function fetchJSON(path) {
  const res = await fetch(path);
  if (!res.ok) return null;
  return res.json();
}

function esc(s) {
  if (s === null || s === undefined) return '';
  const d = document.createElement('div');
  d.textContent = String(s);
  return d.innerHTML;
}

function badge(state) {
  const c = COLORS[state] || 'var(--text-muted)';
  return `<span class="badge" style="color:${c};border:1px solid ${c}">${esc(state)}</span>`;
}

function renderTicket(t) {
  let details = '';
  if (t.estimated_files.length) {
    details += `<div>Files: ${t.estimated_files.map(f => `<code>${esc(f)}</code>`).join(' ')}</div>`;
  }
  if (t.dependencies.length) {
    details += `<div>Depends on: ${t.dependencies.map(d => `<code>${esc(d)}</code>`).join(', ')}</div>`;
  }
  if (t.quality_score !== null) {
    details += `<div>Score: ${esc(t.quality_score)}${t.security_flagged ? ' &middot; security flagged' : ''}</div>`;
  }
  if (t.assigned_worker) details += `<div>Worker: <code>${esc(t.assigned_worker)}</code></div>`;
  if (t.context) details += `<div>${esc(t.context)}</div>`;
  return `<div class="card">
    <div class="card-header">${badge(t.state)}
      <span class="title">${esc(t.title || t.id)}</span>
      <span class="id">${esc(t.id)} &middot; ${esc(t.priority)} &middot; ${esc(t.complexity)} &middot; attempts ${t.attempt_count}</span>
    </div>
    ${details ? `<div class="details">${details}</div>` : ''}
  </div>`;
}

function renderList(id, items, render, emptyText) {
  const el = document.getElementById(id);
  el.innerHTML = items && items.length ? items.map(render).join('') : `<div class="empty">${emptyText}</div>`;
}

async function load() {
  const [summary, tickets, review, escalations] = await Promise.all([
    fetchJSON('/api/summary'),
    fetchJSON('/api/tickets'),
    fetchJSON('/api/review'),
    fetchJSON('/api/escalations?open=1'),
  ]);

  if (summary) {
    const stats = Object.entries(summary.counts)
      .filter(([, n]) => n > 0)
      .map(([s, n]) => `<span class="stat"><span class="dot" style="background:${COLORS[s]}"></span>${n} ${esc(s)}</span>`)
      .join('');
    const slots = summary.slots
      .map(s => `<code>${esc(s.id)}: ${esc(s.current_ticket || s.status)}</code>`).join('');
    document.getElementById('summary').innerHTML = `<div class="summary">${stats}
      <div class="progress-bar"><div class="fill" style="width:${summary.progress_pct}%"></div></div>
      <span>${summary.progress_pct}%</span></div><div class="slots">${slots}</div>`;
  }

  renderList('escalations', escalations, e => `<div class="card">
      <div class="card-header">${badge(e.trigger_type)}<span class="title">#${e.id}</span>
      <span class="id">${esc(e.ticket_id)}</span></div>
      <div class="details">${esc(e.context)} &middot; <code>tix escalation resolve ${e.id} approve</code></div>
    </div>`, 'No open escalations.');
  renderList('review', review ? review.queue : [], renderTicket, 'Nothing to review.');
  renderList('tickets', tickets, renderTicket, 'No tickets yet. Add some with <code>tix ticket add</code>.');
}

load();
setInterval(load, 30000);
</script>
</body>
</html>"""
