import json
import os

from flask import Blueprint, Response, current_app, jsonify, request

from admin_gate import (clear_session_cookies, client_ip, current_admin, json_error,
                        require_permission, set_session_cookies)
from admin_auth import csrf_token_for
from errors import StoreError, ValidationError
from storage import build_full_backup, parse_backup

admin_api = Blueprint('admin_api', __name__, url_prefix='/api/admin')


def _products():
    return current_app.extensions['products']


def _expected_version(data: dict):
    """Version token from ``If-Match`` or the body's ``expectedLastUpdated``."""
    header = request.headers.get('If-Match')
    if header:
        return header.strip().strip('"')
    return data.pop('expectedLastUpdated', None)


def _store_error(e: StoreError):
    return json_error(str(e), e.status_code)


# ---------- auth ----------

@admin_api.route('/auth/login', methods=['POST'])
def login():
    limiter = current_app.extensions['login_limiter']
    ip = client_ip()
    if limiter.is_limited(ip):
        print(f"[WARN] Admin login throttled for {ip}")
        return json_error('Too many login attempts. Please try again later.', 429)

    try:
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            data = {}
        email = data.get('email') or ''
        password = data.get('password') or ''

        if not isinstance(email, str) or not isinstance(password, str):
            limiter.record_failure(ip)
            return json_error('Email and password must be strings', 400)
        email = email.strip()
        if not email or not password:
            limiter.record_failure(ip)
            return json_error('Email and password are required', 400)

        auth = current_app.extensions['admin_auth']
        identity = auth.authenticate(email, password)
        if identity is None:
            limiter.record_failure(ip)
            return json_error('Invalid credentials', 401)

        limiter.reset(ip)
        token = auth.issue_token(identity)
        response = jsonify({
            'success': True,
            'admin': identity.to_dict(),
            'token': token,
            'csrfToken': csrf_token_for(token, current_app.config['CSRF_SECRET']),
        })
        set_session_cookies(response, token)
        print(f"[SUCCESS] Admin {identity.email} logged in")
        return response
    except Exception as e:
        print(f"Error during admin login: {str(e)}")
        return json_error('Internal server error', 500)


@admin_api.route('/auth/logout', methods=['POST'])
def logout():
    response = jsonify({'success': True, 'message': 'Logged out successfully'})
    clear_session_cookies(response)
    return response


@admin_api.route('/auth/verify', methods=['GET'])
def verify():
    identity = current_admin()
    if identity is None:
        return json_error('Invalid or expired token', 401)
    return jsonify({'success': True, 'admin': identity.to_dict()})


# ---------- products ----------

@admin_api.route('/products', methods=['GET'])
@require_permission('view_products')
def list_products():
    try:
        args = request.args
        price_range = None
        if args.get('minPrice') and args.get('maxPrice'):
            try:
                price_range = (float(args['minPrice']), float(args['maxPrice']))
            except ValueError:
                return json_error('minPrice and maxPrice must be numbers', 400)

        in_stock = None
        if args.get('inStock'):
            in_stock = args['inStock'] == 'true'

        products = _products().search(
            category=args.get('category') or None,
            in_stock=in_stock,
            price_range=price_range,
            search=args.get('search') or None,
            sort_by=args.get('sortBy') or 'name',
            sort_order=args.get('sortOrder') or 'asc',
        )
        return jsonify({'success': True, 'products': products, 'total': len(products)})
    except Exception as e:
        print(f"Error fetching products: {str(e)}")
        return json_error('Internal server error', 500)


@admin_api.route('/products', methods=['POST'])
@require_permission('edit_products')
def create_product():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return json_error('Product data is required', 400)
    try:
        product = _products().create(data)
        print(f"[SUCCESS] Product {product['id']} created by {current_admin().email}")
        return jsonify({'success': True, 'product': product, 'message': 'Product created successfully'}), 201
    except StoreError as e:
        return _store_error(e)
    except Exception as e:
        print(f"Error creating product: {str(e)}")
        return json_error('Internal server error', 500)


@admin_api.route('/products/bulk', methods=['PUT'])
@require_permission('bulk_operations')
def bulk_update_products():
    data = request.get_json(silent=True) or {}
    updates = data.get('updates')
    product_ids = data.get('productIds')

    if isinstance(updates, list):
        entries = updates
    elif isinstance(product_ids, list) and product_ids:
        if not isinstance(updates, dict) or not updates:
            return json_error('Updates are required', 400)
        entries = [{'id': product_id, 'data': dict(updates)} for product_id in product_ids]
    else:
        return json_error('Product IDs are required', 400)

    try:
        updated, skipped = _products().bulk_update(entries)
        return jsonify({
            'success': True,
            'products': updated,
            'skippedIds': skipped,
            'message': f'Updated {len(updated)} products',
        })
    except StoreError as e:
        return _store_error(e)
    except Exception as e:
        print(f"Error in bulk update: {str(e)}")
        return json_error('Internal server error', 500)


@admin_api.route('/products/bulk', methods=['DELETE'])
@require_permission('bulk_operations')
def bulk_delete_products():
    data = request.get_json(silent=True) or {}
    product_ids = data.get('productIds')
    if not isinstance(product_ids, list) or not product_ids:
        return json_error('Product IDs are required', 400)
    try:
        deleted, missing = _products().bulk_delete(product_ids)
        return jsonify({
            'success': True,
            'deletedCount': len(deleted),
            'missingIds': missing,
            'message': f'Deleted {len(deleted)} products',
        })
    except Exception as e:
        print(f"Error in bulk delete: {str(e)}")
        return json_error('Internal server error', 500)


@admin_api.route('/products/featured', methods=['GET'])
@require_permission('view_products')
def featured_products():
    try:
        featured = _products().featured()
        return jsonify({'success': True, 'featured': featured, 'count': len(featured)})
    except Exception as e:
        print(f"Error fetching featured products: {str(e)}")
        return json_error('Internal server error', 500)


@admin_api.route('/products/featured', methods=['POST'])
@require_permission('edit_products')
def set_featured():
    data = request.get_json(silent=True) or {}
    product_id = data.get('productId')
    if not product_id:
        return json_error('Product ID is required', 400)
    featured = data.get('featured') is True
    try:
        product = _products().set_featured(product_id, featured)
    except StoreError as e:
        return _store_error(e)
    if product is None:
        return json_error('Product not found', 404)
    action = 'added to' if featured else 'removed from'
    return jsonify({
        'success': True,
        'product': product,
        'message': f'Product {action} featured homepage display',
    })


@admin_api.route('/products/<product_id>', methods=['GET'])
@require_permission('view_products')
def get_product(product_id):
    product = _products().get_by_id(product_id)
    if product is None:
        return json_error('Product not found', 404)
    return jsonify({'success': True, 'product': product})


@admin_api.route('/products/<product_id>', methods=['PUT'])
@require_permission('edit_products')
def update_product(product_id):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return json_error('Update data is required', 400)
    try:
        expected = _expected_version(data)
        product = _products().update(product_id, data, expected_last_updated=expected)
        if product is None:
            return json_error('Product not found', 404)
        return jsonify({'success': True, 'product': product, 'message': 'Product updated successfully'})
    except StoreError as e:
        return _store_error(e)
    except Exception as e:
        print(f"Error updating product: {str(e)}")
        return json_error('Internal server error', 500)


@admin_api.route('/products/<product_id>', methods=['DELETE'])
@require_permission('delete_products')
def delete_product(product_id):
    try:
        if not _products().delete(product_id):
            return json_error('Product not found', 404)
        print(f"[INFO] Product {product_id} deleted by {current_admin().email}")
        return jsonify({'success': True, 'message': 'Product deleted successfully'})
    except Exception as e:
        print(f"Error deleting product: {str(e)}")
        return json_error('Internal server error', 500)


@admin_api.route('/products/<product_id>/duplicate', methods=['POST'])
@require_permission('edit_products')
def duplicate_product(product_id):
    try:
        product = _products().duplicate(product_id)
        if product is None:
            return json_error('Product not found', 404)
        return jsonify({'success': True, 'product': product, 'message': 'Product duplicated successfully'}), 201
    except StoreError as e:
        return _store_error(e)
    except Exception as e:
        print(f"Error duplicating product: {str(e)}")
        return json_error('Internal server error', 500)


# ---------- stock-focused editor ----------

@admin_api.route('/simple-products', methods=['GET'])
@require_permission('view_products')
def simple_products():
    store = _products()
    try:
        products = store.get_all()
        return jsonify({
            'success': True,
            'products': products,
            'stats': store.stock_stats(),
            'lowStockProducts': store.low_stock(),
            'total': len(products),
        })
    except Exception as e:
        print(f"Error fetching products: {str(e)}")
        return json_error('Internal server error', 500)


@admin_api.route('/simple-products', methods=['PUT'])
@require_permission('manage_inventory')
def simple_update_product():
    data = request.get_json(silent=True) or {}
    product_id = data.get('id')
    updates = data.get('updates')
    if not product_id:
        return json_error('Product ID required', 400)
    if not isinstance(updates, dict):
        return json_error('Updates are required', 400)

    store = _products()
    try:
        expected = _expected_version(data)
        if set(updates) == {'stock'}:
            product = store.update_stock(product_id, updates['stock'], expected_last_updated=expected)
        else:
            product = store.update(product_id, updates, expected_last_updated=expected)
        if product is None:
            return json_error('Product not found', 404)
        return jsonify({'success': True, 'product': product, 'message': 'Product updated successfully'})
    except StoreError as e:
        return _store_error(e)
    except Exception as e:
        print(f"Error updating product: {str(e)}")
        return json_error('Internal server error', 500)


@admin_api.route('/simple-products', methods=['POST'])
@require_permission('manage_inventory')
def simple_bulk_stock():
    data = request.get_json(silent=True) or {}
    updates = data.get('updates')
    if not isinstance(updates, list):
        return json_error('Updates must be an array', 400)
    try:
        updated, skipped = _products().bulk_update_stock(updates)
        return jsonify({
            'success': True,
            'message': f'Updated {len(updated)} products',
            'updatedCount': len(updated),
            'skippedIds': skipped,
        })
    except StoreError as e:
        return _store_error(e)
    except Exception as e:
        print(f"Error in bulk stock update: {str(e)}")
        return json_error('Internal server error', 500)


# ---------- analytics ----------

@admin_api.route('/analytics', methods=['GET'])
@require_permission('view_analytics')
def analytics():
    try:
        orders = current_app.extensions['orders'].list_all()
    except Exception as e:
        print(f"[WARN] Orders unavailable for analytics: {e}")
        orders = []
    try:
        return jsonify({'success': True, 'analytics': _products().analytics(orders)})
    except Exception as e:
        print(f"Error building analytics: {str(e)}")
        return json_error('Internal server error', 500)


# ---------- backup / restore ----------

@admin_api.route('/backup', methods=['GET'])
@require_permission('backup_data')
def download_backup():
    try:
        payload = build_full_backup(
            _products().get_all(),
            current_app.extensions['json_orders'].list_all(),
            created_by=current_admin().email,
        )
        path = current_app.extensions['backups'].save(payload, 'backup')
        filename = f"nurvi-jewel-{os.path.basename(path)}"
        print(f"[SUCCESS] Backup written to {path}")
        return Response(
            json.dumps(payload, indent=2, ensure_ascii=False),
            mimetype='application/json',
            headers={'Content-Disposition': f'attachment; filename="{filename}"'},
        )
    except Exception as e:
        print(f"Error creating backup: {str(e)}")
        return json_error('Internal server error', 500)


@admin_api.route('/backup', methods=['POST'])
@require_permission('restore_data')
def restore_backup():
    backup = request.get_json(silent=True)
    try:
        products, orders = parse_backup(backup)
    except ValueError as e:
        return json_error(str(e), 400)
    if orders is not None and not all(isinstance(o, dict) and o.get('orderId') for o in orders):
        return json_error('Invalid backup format', 400)

    store = _products()
    order_store = current_app.extensions['json_orders']
    try:
        current = build_full_backup(store.get_all(), order_store.list_all(),
                                    created_by=current_admin().email, reason='Pre-restore backup')
        current_app.extensions['backups'].save(current, 'pre-restore-backup')

        restored = store.replace_all(products)
        if orders is not None:
            order_store.replace_orders(orders)
        print(f"[SUCCESS] Backup restored by {current_admin().email}")
        return jsonify({
            'success': True,
            'message': 'Backup restored successfully',
            'restoredProducts': len(restored),
            'restoredOrders': len(orders or []),
            'backupTimestamp': backup.get('timestamp'),
        })
    except ValidationError as e:
        return json_error(f'Invalid backup data: {e}', 400)
    except Exception as e:
        print(f"Error restoring backup: {str(e)}")
        return json_error('Internal server error', 500)
