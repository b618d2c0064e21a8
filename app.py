from flask import (
    Flask, request, redirect, session, render_template_string,
    g, url_for, flash
)
from flask_bcrypt import Bcrypt
from markupsafe import Markup, escape
from dotenv import load_dotenv
import sqlite3
import datetime
import logging
from functools import wraps
import uuid
import os

from orders import (
    InvalidStatus, format_visit_time, sample_orders,
    ORDER_PENDING, ORDER_ACCEPTED, DELIVERY_STATUSES, DELIVERY_PENDING, DELIVERED,
)
from stores import (
    RemoteOrderStore, RemoteStoreError, LocalStore,
    AUTH_FLAG_KEY, USER_EMAIL_KEY,
)
from tracker import OrderTracker

# ============================================================
# APP INITIALIZATION
# ============================================================

load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

app = Flask(__name__)
app.config.from_mapping(
    # IMPORTANT: Set SECRET_KEY in the environment for any shared deployment
    SECRET_KEY=os.getenv("SECRET_KEY", "dev-ration-order-dashboard-key"),
    RATION_DATABASE=os.getenv("RATION_DATABASE", os.path.join(BASE_DIR, "ration.db")),
    LOCAL_STORE_DIR=os.getenv("LOCAL_STORE_DIR", os.path.join(BASE_DIR, "local_store")),
    ADMIN_EMAIL=os.getenv("ADMIN_EMAIL", "admin@ration.local"),
    ADMIN_PASSWORD=os.getenv("ADMIN_PASSWORD", "Admin@123"),
    SEED_SAMPLE_ORDERS=os.getenv("SEED_SAMPLE_ORDERS", "0") == "1",
    LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO").upper(),
    BCRYPT_LOG_ROUNDS=int(os.getenv("BCRYPT_LOG_ROUNDS", "12")),
    PERMANENT_SESSION_LIFETIME=datetime.timedelta(days=365),
)
bcrypt = Bcrypt(app)

logging.basicConfig(
    level=app.config["LOG_LEVEL"],
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
app.logger.setLevel(app.config["LOG_LEVEL"])

# ============================================================
# DATABASE CONNECTION MANAGEMENT & STORE HELPERS
# ============================================================

def get_db():
    if 'db' not in g:
        g.db = sqlite3.connect(
            app.config["RATION_DATABASE"],
            detect_types=sqlite3.PARSE_DECLTYPES | sqlite3.PARSE_COLNAMES
        )
        g.db.row_factory = sqlite3.Row
    return g.db

@app.teardown_appcontext
def close_db(e=None):
    db = g.pop('db', None)
    if db is not None:
        db.close()

def get_device_id():
    if 'device_id' not in session:
        session['device_id'] = uuid.uuid4().hex
        session.permanent = True
    return session['device_id']

def get_local_store():
    if 'local_store' not in g:
        g.local_store = LocalStore(app.config["LOCAL_STORE_DIR"], get_device_id())
    return g.local_store

def get_tracker():
    if 'tracker' not in g:
        g.tracker = OrderTracker(RemoteOrderStore(get_db), get_local_store())
    return g.tracker

def init_db():
    """Creates the admin and order tables, then seeds the admin account (and sample orders if asked)."""
    db = get_db()
    cur = db.cursor()

    cur.execute("""
        CREATE TABLE IF NOT EXISTS admins (
            id INTEGER PRIMARY KEY,
            email TEXT NOT NULL UNIQUE,
            full_name TEXT,
            password_hash TEXT NOT NULL,
            role TEXT NOT NULL DEFAULT 'admin'
        )
    """)
    cur.execute("CREATE INDEX IF NOT EXISTS idx_admins_email ON admins (email)")

    cur.execute("SELECT id FROM admins WHERE role = 'admin'")
    if not cur.fetchone():
        admin_pass = bcrypt.generate_password_hash(app.config["ADMIN_PASSWORD"]).decode('utf-8')
        cur.execute(
            "INSERT INTO admins (email, full_name, password_hash, role) VALUES (?, ?, ?, ?)",
            (app.config["ADMIN_EMAIL"].strip().lower(), 'Main Admin', admin_pass, 'admin')
        )
    db.commit()

    store = RemoteOrderStore(get_db)
    store.init_schema()
    if app.config["SEED_SAMPLE_ORDERS"] and store.count() == 0:
        seeded = sample_orders()
        for order in seeded:
            store.insert(order)
        app.logger.info("Seeded %d sample orders", len(seeded))

with app.app_context():
    try:
        init_db()
    except (sqlite3.Error, RemoteStoreError) as e:
        # The dashboard still runs on sample data and the local store
        app.logger.error("Order store setup failed: %s", e)

# ============================================================
# AUTH HELPERS
# ============================================================

@app.before_request
def load_logged_in_admin():
    g.admin = None
    admin_id = session.get('admin_id')
    if admin_id is None:
        return
    try:
        g.admin = get_db().execute('SELECT * FROM admins WHERE id = ?', (admin_id,)).fetchone()
    except sqlite3.Error as e:
        app.logger.warning("Could not load admin %s: %s", admin_id, e)

def is_authenticated():
    return g.admin is not None and get_local_store().get(AUTH_FLAG_KEY) == "true"

def admin_required(view):
    @wraps(view)
    def wrapped_view(**kwargs):
        if not is_authenticated():
            flash("Admin sign-in required.", "error")
            return redirect(url_for('signin'))
        return view(**kwargs)
    return wrapped_view

# ============================================================
# HTML/COMPONENT HELPERS
# ============================================================

def render_flashes():
    messages = ""
    flashes = session.pop('_flashes', [])
    for category, msg in flashes:
        color_map = {"error": "red", "success": "green", "warning": "yellow", "info": "blue"}
        color = color_map.get(category, "blue")
        messages += f"<div class='bg-{color}-100 border-l-4 border-{color}-500 text-{color}-800 p-3 mb-4 rounded-lg' role='alert'>{escape(msg)}</div>"
    return messages

def get_back_button_html():
    return f"""
    <div class="mb-4">
        <a href="{url_for('dashboard')}" class="text-white hover:underline font-semibold inline-flex items-center gap-1">
            <span>⬅️</span> Back
        </a>
    </div>
    """

def get_logo_html():
    return """
    <div class="flex items-center gap-2">
        <span class="text-3xl">📦</span>
        <div>
            <div class="text-white font-extrabold text-xl tracking-wide">RATION ORDER DESK</div>
            <div class="text-teal-100 text-xs font-medium">Ration Distribution Management System</div>
        </div>
    </div>
    """

def get_stat_card(title, value, unit="", color="teal", icon="⭐"):
    return f"""
    <div class="bg-white p-5 rounded-lg shadow-xl border-t-8 border-{color}-500 text-center">
        <p class="text-4xl mb-2 text-{color}-600">{icon}</p>
        <p class="text-xl font-extrabold text-{color}-800">{escape(value)} <span class="text-base font-semibold text-gray-500">{escape(unit)}</span></p>
        <p class="text-sm text-gray-500 mt-1 font-semibold">{escape(title)}</p>
    </div>
    """

def format_cost(cost):
    try:
        return f"₹{float(cost):,.2f}"
    except (TypeError, ValueError):
        return "₹-"

def get_pay_badge(paid):
    if paid:
        return "<span class='text-green-700 font-bold'>✅ Paid</span>"
    return "<span class='text-red-700 font-bold'>❌ Not Paid</span>"

def get_sync_status_html(status):
    if status.queued == 0:
        state, color, icon = "In sync", "green", "✅"
    else:
        state, color, icon = "Updates waiting", "yellow", "⏳"
    error_html = ""
    if status.last_error:
        error_html = f"<p class='text-sm text-red-700 mt-2 font-semibold'>Last error: {escape(status.last_error)}</p>"
    return f"""
    <div class="bg-white p-6 rounded-xl shadow-xl border-l-8 border-{color}-500 mt-8">
        <h4 class="text-xl font-extrabold mb-4 text-gray-800">Order Store Sync</h4>
        <div class="grid grid-cols-1 md:grid-cols-3 gap-6">
            {get_stat_card("Sync State", state, icon=icon, color=color)}
            {get_stat_card("Queued Updates", status.queued, icon="📨", color="blue")}
            {get_stat_card("Last Successful Sync", format_visit_time(status.last_success), icon="🕒", color="gray")}
        </div>
        {error_html}
        <form method="POST" action="{url_for('sync_now')}" class="mt-4">
            <button class="bg-teal-600 text-white px-4 py-2 rounded-lg font-bold hover:bg-teal-700">Sync now</button>
        </form>
    </div>
    """

LAYOUT_TEMPLATE = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>{{ title }} | Ration Order Desk</title>
    <script src="https://cdn.tailwindcss.com"></script>
</head>
<body class="min-h-screen bg-gradient-to-br from-teal-700 via-teal-600 to-emerald-600">
    <nav class="bg-teal-900 shadow-lg">
        <div class="max-w-7xl mx-auto px-4 py-3 flex justify-between items-center">
            {{ logo }}
            <div class="flex items-center gap-2 text-white">{{ nav }}</div>
        </div>
    </nav>
    <main class="max-w-7xl mx-auto p-6">
        {{ flashes }}
        {{ content }}
    </main>
</body>
</html>
"""

def get_layout(title, content, role='guest'):
    if role == 'admin':
        nav = f"""
            <a href="{url_for('dashboard')}" class="px-3 py-2 text-sm font-medium hover:underline">Dashboard</a>
            <a href="{url_for('submissions')}" class="px-3 py-2 text-sm font-medium hover:underline">Submissions</a>
            <a href="{url_for('delivery')}" class="px-3 py-2 text-sm font-medium hover:underline">Delivery</a>
            <a href="{url_for('meet')}" class="px-3 py-2 text-sm font-medium hover:underline">Meet</a>
            <a href="{url_for('logout')}" class="bg-white text-red-700 px-4 py-2 rounded-xl font-semibold hover:bg-gray-100">Logout</a>
        """
    else:
        nav = f"""
            <a href="{url_for('signin')}" class="bg-white text-teal-800 px-4 py-2 rounded-xl font-bold hover:shadow-lg">Sign In</a>
        """
    return render_template_string(
        LAYOUT_TEMPLATE,
        title=title,
        logo=Markup(get_logo_html()),
        nav=Markup(nav),
        flashes=Markup(render_flashes()),
        content=Markup(content),
    )

# ============================================================
# PUBLIC ROUTES
# ============================================================

@app.route("/")
def index():
    if is_authenticated():
        return redirect(url_for('dashboard'))

    features = [
        ("📋", "Order Management", "Review and process ration order submissions efficiently",
         ["View all pending submissions", "Check payment status", "Accept or reject orders", "Track visit times"]),
        ("🚚", "Delivery Tracking", "Monitor and update delivery status",
         ["Color-coded status indicators", "Update delivery progress", "View complete order details"]),
        ("🛡️", "Secure Access", "Protected admin-only access with authentication",
         ["Admin sign-in", "Hashed passwords", "Per-device sync status"]),
    ]
    feature_cards = "".join(f"""
        <div class="bg-white p-6 rounded-xl shadow-xl">
            <p class="text-4xl mb-3">{icon}</p>
            <h3 class="text-xl font-extrabold text-teal-900">{title}</h3>
            <p class="text-gray-600 mb-3">{description}</p>
            <ul class="text-sm text-gray-700 space-y-1">{"".join(f"<li>• {point}</li>" for point in points)}</ul>
        </div>
    """ for icon, title, description, points in features)

    content = f"""
    <div class="text-center text-white py-12">
        <h1 class="text-5xl font-extrabold mb-4">Ration Distribution Management</h1>
        <p class="text-xl opacity-90 mb-8">Streamline your ration distribution workflow with the admin dashboard</p>
        <a href="{url_for('signin')}" class="bg-white text-teal-800 px-8 py-4 rounded-xl font-extrabold text-lg hover:shadow-2xl">Sign In</a>
    </div>
    <div class="grid grid-cols-1 md:grid-cols-3 gap-6">{feature_cards}</div>
    """
    return get_layout("Welcome", content)

@app.route("/signin", methods=['GET', 'POST'])
def signin():
    if request.method == 'POST':
        email = request.form.get('email', '').strip().lower()
        password = request.form.get('password', '').strip()
        try:
            admin = get_db().execute("SELECT * FROM admins WHERE email = ?", (email,)).fetchone()
        except sqlite3.Error as e:
            app.logger.error("Admin lookup failed: %s", e)
            admin = None

        if not admin or admin['role'] != 'admin' or not bcrypt.check_password_hash(admin['password_hash'], password):
            flash("Invalid email or password.", "error")
        else:
            session['admin_id'] = admin['id']
            local = get_local_store()
            local.set(AUTH_FLAG_KEY, "true")
            local.set(USER_EMAIL_KEY, admin['email'])
            app.logger.info("Admin %s signed in", admin['email'])
            flash("Signed in successfully.", "success")
            return redirect(url_for('dashboard'))

    content = f"""
    <div class="bg-white p-8 rounded-2xl shadow-2xl max-w-md mx-auto border-t-8 border-teal-600">
        <h2 class="text-3xl font-bold mb-6 text-teal-900 text-center">Admin Sign In 🔑</h2>
        <form method="POST" class="space-y-4">
            <input name="email" type="email" placeholder="Email" required class="border p-3 rounded-lg w-full text-lg" value="{escape(request.form.get('email', ''))}">
            <input name="password" type="password" placeholder="Password" required class="border p-3 rounded-lg w-full text-lg">
            <button class="bg-teal-600 text-white px-4 py-4 rounded-xl w-full font-extrabold text-xl hover:bg-teal-700 shadow-lg">Sign In</button>
        </form>
    </div>
    """
    return get_layout("Sign In", content)

@app.route("/logout")
def logout():
    try:
        get_local_store().remove(AUTH_FLAG_KEY, USER_EMAIL_KEY)
    except OSError as e:
        app.logger.error("Logout failed for device %s: %s", session.get('device_id'), e)
        flash("Failed to logout", "error")
        return redirect(url_for('dashboard'))
    # Keep device_id: the local store belongs to the device, not the admin
    session.pop('admin_id', None)
    flash("Logged out successfully", "info")
    return redirect(url_for('signin'))

# ============================================================
# ADMIN ROUTES
# ============================================================

@app.route("/dashboard")
@admin_required
def dashboard():
    email = get_local_store().get(USER_EMAIL_KEY) or g.admin['email']
    admin_name = email.split("@")[0] if email else "Admin"

    cards = [
        ("📋", "Submission Page", "View and manage ration order submissions", url_for('submissions')),
        ("🚚", "Delivery Page", "Track and update delivery status", url_for('delivery')),
        ("🤝", "Meet Page", "Communication and support", url_for('meet')),
    ]
    cards_html = "".join(f"""
        <a href="{link}" class="block bg-white p-6 rounded-xl shadow-xl hover:shadow-2xl transform hover:scale-105 transition duration-300">
            <p class="text-4xl mb-3">{icon}</p>
            <h3 class="text-xl font-extrabold text-teal-900">{title}</h3>
            <p class="text-gray-600 mb-4">{description}</p>
            <span class="bg-teal-600 text-white px-4 py-2 rounded-lg block text-center font-bold">Open {title}</span>
        </a>
    """ for icon, title, description, link in cards)

    content = f"""
    <h2 class="text-3xl font-extrabold mb-2 text-white">Welcome, {escape(admin_name)}</h2>
    <p class="text-teal-100 mb-8">Ration Distribution Management System</p>
    <div class="grid grid-cols-1 md:grid-cols-3 gap-6">{cards_html}</div>
    {get_sync_status_html(get_tracker().sync_status())}
    """
    return get_layout("Dashboard", content, 'admin')

@app.route("/sync", methods=['POST'])
@admin_required
def sync_now():
    status = get_tracker().drain_outbox()
    if status.queued == 0:
        flash("All order updates are synced.", "success")
    else:
        flash(f"{status.queued} order update(s) still waiting for the order store.", "warning")
    return redirect(url_for('dashboard'))

@app.route("/submissions")
@admin_required
def submissions():
    orders = get_tracker().list_orders(ORDER_PENDING)

    if not orders:
        rows = "<tr><td colspan='8' class='text-center py-8 text-gray-500'>No pending submissions</td></tr>"
    else:
        rows = "".join(f"""
        <tr class="border-b hover:bg-gray-50">
            <td class="p-3">{index}</td>
            <td class="p-3 font-mono text-sm">{escape(order.user_id)}</td>
            <td class="p-3">{escape(order.phone_no)}</td>
            <td class="p-3">{escape(order.items_display)}</td>
            <td class="p-3 font-semibold">{format_cost(order.cost)}</td>
            <td class="p-3">{get_pay_badge(order.pay_history)}</td>
            <td class="p-3">{escape(format_visit_time(order.visit_time))}</td>
            <td class="p-3">
                <div class="flex gap-2">
                    <form method="POST" action="{url_for('accept_submission', order_id=order.id)}">
                        <button class="bg-green-600 text-white px-3 py-1 rounded-lg text-sm font-bold hover:bg-green-700">✔ Accept</button>
                    </form>
                    <form method="POST" action="{url_for('reject_submission', order_id=order.id)}">
                        <button class="bg-red-600 text-white px-3 py-1 rounded-lg text-sm font-bold hover:bg-red-700">✖ Reject</button>
                    </form>
                </div>
            </td>
        </tr>
        """ for index, order in enumerate(orders, start=1))

    content = f"""
    {get_back_button_html()}
    <h2 class="text-3xl font-bold text-white mb-6">Order Submissions</h2>
    <div class="bg-white rounded-xl shadow-2xl overflow-x-auto">
        <div class="bg-teal-800 text-white px-6 py-4 font-bold text-lg">Pending Ration Orders</div>
        <table class="min-w-full text-left">
            <thead class="bg-gray-100">
                <tr>
                    <th class="p-3">S.No</th><th class="p-3">ID</th><th class="p-3">Phone No</th><th class="p-3">Items</th>
                    <th class="p-3">Cost</th><th class="p-3">Pay History</th><th class="p-3">Visit Time</th><th class="p-3">Actions</th>
                </tr>
            </thead>
            <tbody>{rows}</tbody>
        </table>
    </div>
    """
    return get_layout("Submissions", content, 'admin')

@app.route("/submissions/<order_id>/accept", methods=['POST'])
@admin_required
def accept_submission(order_id):
    accepted = get_tracker().accept_order(order_id)
    if accepted is not None:
        flash("Order accepted successfully - Available in Delivery page", "success")
    else:
        flash(f"Order {order_id} is no longer pending.", "warning")
    return redirect(url_for('submissions'))

@app.route("/submissions/<order_id>/reject", methods=['POST'])
@admin_required
def reject_submission(order_id):
    get_tracker().reject_order(order_id)
    flash("Order rejected", "success")
    return redirect(url_for('submissions'))

@app.route("/delivery")
@admin_required
def delivery():
    orders = get_tracker().list_orders(ORDER_ACCEPTED)
    row_classes = {DELIVERED: "bg-green-50 hover:bg-green-100", DELIVERY_PENDING: "bg-yellow-50 hover:bg-yellow-100"}

    def status_select(order):
        options = "".join(
            f"<option value='{status}' {'selected' if order.delivery_status == status else ''}>{status.title()}</option>"
            for status in DELIVERY_STATUSES
        )
        return f"""
        <form method="POST" action="{url_for('update_delivery', order_id=order.id)}">
            <select name="delivery_status" onchange="this.form.submit()" class="border rounded-lg p-2">{options}</select>
            <noscript><button class="ml-2 text-sm underline">Save</button></noscript>
        </form>
        """

    if not orders:
        rows = "<tr><td colspan='8' class='text-center py-8 text-gray-500'>No accepted orders yet</td></tr>"
    else:
        rows = "".join(f"""
        <tr class="border-b {row_classes.get(order.delivery_status, '')}">
            <td class="p-3">{index}</td>
            <td class="p-3 font-mono text-sm">{escape(order.user_id)}</td>
            <td class="p-3">{escape(order.phone_no)}</td>
            <td class="p-3">{escape(order.items_display)}</td>
            <td class="p-3 font-semibold">{format_cost(order.cost)}</td>
            <td class="p-3">{get_pay_badge(order.pay_history)}</td>
            <td class="p-3">{escape(format_visit_time(order.visit_time))}</td>
            <td class="p-3">{status_select(order)}</td>
        </tr>
        """ for index, order in enumerate(orders, start=1))

    content = f"""
    {get_back_button_html()}
    <h2 class="text-3xl font-bold text-white mb-6">Delivery Management</h2>
    <div class="bg-white rounded-xl shadow-2xl overflow-x-auto">
        <div class="bg-teal-800 text-white px-6 py-4 font-bold text-lg">Accepted Orders - Delivery Status</div>
        <table class="min-w-full text-left">
            <thead class="bg-gray-100">
                <tr>
                    <th class="p-3">S.No</th><th class="p-3">ID</th><th class="p-3">Phone No</th><th class="p-3">Items</th>
                    <th class="p-3">Cost</th><th class="p-3">Pay History</th><th class="p-3">Visit Time</th><th class="p-3">Delivery Status</th>
                </tr>
            </thead>
            <tbody>{rows}</tbody>
        </table>
    </div>
    """
    return get_layout("Delivery", content, 'admin')

@app.route("/delivery/<order_id>/status", methods=['POST'])
@admin_required
def update_delivery(order_id):
    new_status = request.form.get('delivery_status', '').strip().lower()
    try:
        get_tracker().update_delivery_status(order_id, new_status)
    except InvalidStatus as e:
        flash(str(e), "error")
    else:
        flash(f"Delivery status updated to {new_status}", "success")
    return redirect(url_for('delivery'))

@app.route("/meet")
@admin_required
def meet():
    channels = [
        ("💬", "Live Chat", "Connect with support team instantly", "Start Chat"),
        ("📞", "Phone Support", "Call us for urgent assistance", "Call Now"),
        ("✉️", "Email Support", "Send us your queries via email", "Send Email"),
    ]
    channel_cards = "".join(f"""
        <div class="bg-white p-6 rounded-xl shadow-xl">
            <p class="text-4xl mb-3">{icon}</p>
            <h3 class="text-xl font-extrabold text-teal-900">{title}</h3>
            <p class="text-gray-600 mb-4">{description}</p>
            <span class="bg-teal-600 text-white px-4 py-2 rounded-lg block text-center font-bold">{action}</span>
        </div>
    """ for icon, title, description, action in channels)

    content = f"""
    {get_back_button_html()}
    <h2 class="text-3xl font-bold text-white mb-6">Communication & Support</h2>
    <div class="grid grid-cols-1 md:grid-cols-3 gap-6">{channel_cards}</div>
    <div class="bg-white p-6 rounded-xl shadow-xl mt-6">
        <h3 class="text-xl font-extrabold text-teal-900 mb-2">Quick Help</h3>
        <ul class="text-gray-700 space-y-1">
            <li>• Accepted orders appear on the Delivery page right away, even while the order store is offline.</li>
            <li>• Use "Sync now" on the dashboard to retry order updates that are still waiting.</li>
            <li>• Rejected orders are removed from the submissions list.</li>
        </ul>
    </div>
    """
    return get_layout("Meet", content, 'admin')

# ============================================================
# RUN APP
# ============================================================

if __name__ == '__main__':
    app.run(debug=True, host='0.0.0.0', port=5000)
