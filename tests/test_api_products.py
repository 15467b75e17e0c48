import json
import os

import pytest


@pytest.fixture
def create(client, admin_headers):
    def create_product(**fields):
        payload = {'name': 'Gold Ring', 'price': 2000, 'category': 'Rings'}
        payload.update(fields)
        response = client.post('/api/admin/products', json=payload, headers=admin_headers)
        assert response.status_code == 201, response.get_json()
        return response.get_json()['product']
    return create_product


def test_create_and_fetch_product(client, admin_headers, sample_product):
    response = client.post('/api/admin/products', json=sample_product, headers=admin_headers)
    assert response.status_code == 201
    product = response.get_json()['product']

    fetched = client.get(f"/api/admin/products/{product['id']}", headers=admin_headers).get_json()
    assert fetched == {'success': True, 'product': product}


@pytest.mark.parametrize('payload,error', [
    ({'price': 10, 'category': 'Rings'}, 'Missing required field: name'),
    ({'name': 'X', 'price': -1, 'category': 'Rings'}, 'price cannot be negative'),
    ({'name': 'X', 'price': 'free', 'category': 'Rings'}, 'price must be a valid number'),
])
def test_create_rejects_invalid_products(client, admin_headers, payload, error):
    response = client.post('/api/admin/products', json=payload, headers=admin_headers)
    assert response.status_code == 400
    assert response.get_json() == {'success': False, 'error': error}


def test_create_requires_json_body(client, admin_headers):
    response = client.post('/api/admin/products', data='nope', headers=admin_headers)
    assert response.status_code == 400


def test_list_products_with_filters(client, admin_headers, create):
    create(name='Gold Ring', price=2000)
    create(name='Silver Ring', price=800)
    create(name='Pearl Necklace', price=3500, category='Necklaces', stock=0)

    body = client.get('/api/admin/products?category=rings&sortBy=price&sortOrder=desc',
                      headers=admin_headers).get_json()
    assert [p['name'] for p in body['products']] == ['Gold Ring', 'Silver Ring']
    assert body['total'] == 2

    body = client.get('/api/admin/products?minPrice=1000&maxPrice=4000', headers=admin_headers).get_json()
    assert [p['name'] for p in body['products']] == ['Gold Ring', 'Pearl Necklace']

    body = client.get('/api/admin/products?inStock=false', headers=admin_headers).get_json()
    assert [p['name'] for p in body['products']] == ['Pearl Necklace']

    body = client.get('/api/admin/products?search=silver', headers=admin_headers).get_json()
    assert [p['name'] for p in body['products']] == ['Silver Ring']


def test_list_products_rejects_bad_price_range(client, admin_headers):
    response = client.get('/api/admin/products?minPrice=cheap&maxPrice=10', headers=admin_headers)
    assert response.status_code == 400


def test_update_product_with_version_check(client, admin_headers, create):
    product = create()
    url = f"/api/admin/products/{product['id']}"

    response = client.put(url, json={'price': 2500}, headers=dict(admin_headers, **{'If-Match': product['lastUpdated']}))
    assert response.status_code == 200
    updated = response.get_json()['product']
    assert updated['priceHistory'][0]['price'] == 2000

    stale = client.put(url, json={'price': 2600, 'expectedLastUpdated': product['lastUpdated']},
                       headers=admin_headers)
    assert stale.status_code == 409

    fresh = client.put(url, json={'price': 2600, 'expectedLastUpdated': updated['lastUpdated']},
                       headers=admin_headers)
    assert fresh.status_code == 200
    assert 'expectedLastUpdated' not in fresh.get_json()['product']


def test_update_and_delete_missing_product(client, admin_headers):
    assert client.put('/api/admin/products/ghost', json={'price': 1}, headers=admin_headers).status_code == 404
    assert client.delete('/api/admin/products/ghost', headers=admin_headers).status_code == 404
    assert client.get('/api/admin/products/ghost', headers=admin_headers).status_code == 404


def test_delete_product(client, admin_headers, create):
    product = create()
    response = client.delete(f"/api/admin/products/{product['id']}", headers=admin_headers)
    assert response.status_code == 200
    assert client.get(f"/api/admin/products/{product['id']}", headers=admin_headers).status_code == 404


def test_bulk_update_by_ids(client, admin_headers, create):
    first, second = create(name='A'), create(name='B')
    response = client.put('/api/admin/products/bulk', headers=admin_headers, json={
        'productIds': [first['id'], second['id'], 'ghost'],
        'updates': {'isSale': True},
    })
    body = response.get_json()
    assert response.status_code == 200
    assert [p['isSale'] for p in body['products']] == [True, True]
    assert body['skippedIds'] == ['ghost']


def test_bulk_update_per_product(client, admin_headers, create):
    first, second = create(name='A', price=100), create(name='B', price=200)
    response = client.put('/api/admin/products/bulk', headers=admin_headers, json={
        'updates': [{'id': first['id'], 'data': {'price': 110}}, {'id': second['id'], 'data': {'price': 220}}],
    })
    assert [p['price'] for p in response.get_json()['products']] == [110, 220]


def test_bulk_update_validation(client, admin_headers, create):
    product = create()
    assert client.put('/api/admin/products/bulk', json={}, headers=admin_headers).status_code == 400
    assert client.put('/api/admin/products/bulk', json={'productIds': [product['id']]},
                      headers=admin_headers).status_code == 400
    response = client.put('/api/admin/products/bulk', headers=admin_headers, json={
        'productIds': [product['id']], 'updates': {'price': -3},
    })
    assert response.status_code == 400


def test_bulk_delete(client, admin_headers, create):
    first, second = create(name='A'), create(name='B')
    response = client.delete('/api/admin/products/bulk', headers=admin_headers,
                             json={'productIds': [first['id'], 'ghost']})
    body = response.get_json()
    assert body['deletedCount'] == 1
    assert body['missingIds'] == ['ghost']
    remaining = client.get('/api/admin/products', headers=admin_headers).get_json()['products']
    assert [p['id'] for p in remaining] == [second['id']]
    assert client.delete('/api/admin/products/bulk', json={}, headers=admin_headers).status_code == 400


def test_duplicate_product(client, admin_headers, create):
    product = create()
    response = client.post(f"/api/admin/products/{product['id']}/duplicate", headers=admin_headers)
    assert response.status_code == 201
    assert response.get_json()['product']['name'] == 'Gold Ring (Copy)'
    assert client.post('/api/admin/products/ghost/duplicate', headers=admin_headers).status_code == 404


def test_featured_products(client, admin_headers, create):
    products = [create(name=f'Ring {i}') for i in range(6)]
    for product in products[:5]:
        response = client.post('/api/admin/products/featured', headers=admin_headers,
                               json={'productId': product['id'], 'featured': True})
        assert response.status_code == 200

    full = client.post('/api/admin/products/featured', headers=admin_headers,
                       json={'productId': products[5]['id'], 'featured': True})
    assert full.status_code == 400
    assert 'Maximum 5' in full.get_json()['error']

    body = client.get('/api/admin/products/featured', headers=admin_headers).get_json()
    assert body['count'] == 5
    assert client.post('/api/admin/products/featured', json={}, headers=admin_headers).status_code == 400
    missing = client.post('/api/admin/products/featured', json={'productId': 'ghost', 'featured': False},
                          headers=admin_headers)
    assert missing.status_code == 404


def test_simple_products_overview(client, admin_headers, create):
    create(name='Plenty', stock=20)
    create(name='Few', stock=2)
    body = client.get('/api/admin/simple-products', headers=admin_headers).get_json()
    assert body['total'] == 2
    assert body['stats']['lowStock'] == 1
    assert [p['name'] for p in body['lowStockProducts']] == ['Few']


def test_simple_products_survives_unreadable_legacy_stock(app, client, admin_headers):
    data_dir = app.config['DATA_DIR']
    os.makedirs(data_dir, exist_ok=True)
    with open(os.path.join(data_dir, 'inventory.json'), 'w', encoding='utf-8') as handle:
        json.dump({'all': [
            {'id': 'r1', 'name': 'Old Ring', 'category': 'Rings', 'price': 900, 'stock': 'out of stock'},
            {'id': 'r2', 'name': 'Old Chain', 'category': 'Necklaces', 'stock': 7},
        ]}, handle)

    response = client.get('/api/admin/simple-products', headers=admin_headers)

    assert response.status_code == 200
    body = response.get_json()
    assert body['stats']['outOfStock'] == 1
    assert body['stats']['totalValue'] == 0
    assert [p['id'] for p in body['lowStockProducts']] == ['r1']


def test_product_reports_answer_500_on_store_failure(app, client, admin_headers):
    def broken():
        raise OSError('disk unavailable')

    app.extensions['products'].get_all = broken
    for url in ('/api/admin/simple-products', '/api/admin/products/featured'):
        response = client.get(url, headers=admin_headers)
        assert response.status_code == 500
        assert response.get_json() == {'success': False, 'error': 'Internal server error'}


def test_simple_product_stock_update(client, admin_headers, create):
    product = create()
    response = client.put('/api/admin/simple-products', headers=admin_headers,
                          json={'id': product['id'], 'updates': {'stock': 0}})
    assert response.status_code == 200
    assert response.get_json()['product']['inStock'] is False

    response = client.put('/api/admin/simple-products', headers=admin_headers,
                          json={'id': product['id'], 'updates': {'stock': 4, 'price': 1999}})
    assert response.get_json()['product']['price'] == 1999

    assert client.put('/api/admin/simple-products', json={'updates': {}},
                      headers=admin_headers).status_code == 400
    assert client.put('/api/admin/simple-products', json={'id': 'ghost', 'updates': {'stock': 1}},
                      headers=admin_headers).status_code == 404
    negative = client.put('/api/admin/simple-products', headers=admin_headers,
                          json={'id': product['id'], 'updates': {'stock': -1}})
    assert negative.status_code == 400


def test_simple_products_bulk_stock(client, admin_headers, create):
    first, second = create(name='A'), create(name='B')
    response = client.post('/api/admin/simple-products', headers=admin_headers, json={'updates': [
        {'id': first['id'], 'stock': 1}, {'id': second['id'], 'stock': 2}, {'id': 'ghost', 'stock': 3},
    ]})
    body = response.get_json()
    assert body['updatedCount'] == 2
    assert body['skippedIds'] == ['ghost']
    assert client.post('/api/admin/simple-products', json={'updates': 'all'},
                       headers=admin_headers).status_code == 400


def test_analytics(client, admin_headers, create, sample_order):
    create(price=400, stock=1)
    client.post('/api/orders/save', json=sample_order)
    body = client.get('/api/admin/analytics', headers=admin_headers).get_json()
    assert body['success'] is True
    assert body['analytics']['overview']['totalProducts'] == 1
    assert body['analytics']['overview']['lowStockProducts'] == 1
    assert body['analytics']['salesInsights']['totalOrders'] == 1


def test_storefront_catalog_is_public(client, create):
    create(name='Band', category='Rings', isNew=True)
    body = client.get('/api/inventory').get_json()
    assert [p['name'] for p in body['rings']] == ['Band']
    assert [p['name'] for p in body['newArrivals']] == ['Band']
    assert body['earrings'] == []


# ---------- backup / restore ----------

def test_backup_download(app, client, admin_headers, create, sample_order):
    create()
    client.post('/api/orders/save', json=sample_order)

    response = client.get('/api/admin/backup', headers=admin_headers)

    assert response.status_code == 200
    disposition = response.headers['Content-Disposition']
    assert disposition.startswith('attachment; filename="nurvi-jewel-backup-')
    backup = response.get_json()
    assert len(backup['data']['inventory']['all']) == 1
    assert len(backup['data']['orders']) == 1
    assert backup['metadata']['createdBy'] == 'owner@nurvijewel.com'
    assert len(app.extensions['backups'].list('backup')) == 1


def test_restore_replaces_catalog_and_orders(app, client, admin_headers, create, sample_order):
    create(name='Old')
    backup = {
        'timestamp': '2025-01-01T00:00:00+00:00',
        'data': {
            'inventory': {'all': [{'id': 'rings-1', 'name': 'Restored Ring', 'category': 'Rings', 'price': 900}]},
            'orders': [dict(sample_order, orderId='ORD-restored', orderStatus='delivered')],
        },
    }

    response = client.post('/api/admin/backup', json=backup, headers=admin_headers)

    assert response.status_code == 200
    assert response.get_json() == {
        'success': True,
        'message': 'Backup restored successfully',
        'restoredProducts': 1,
        'restoredOrders': 1,
        'backupTimestamp': '2025-01-01T00:00:00+00:00',
    }
    products = client.get('/api/admin/products', headers=admin_headers).get_json()['products']
    assert [p['name'] for p in products] == ['Restored Ring']
    assert app.extensions['json_orders'].get('ORD-restored')['orderStatus'] == 'delivered'
    pre_restore = app.extensions['backups'].list('pre-restore-backup')
    assert len(pre_restore) == 1
    assert os.path.exists(os.path.join(app.extensions['backups'].backup_dir, pre_restore[0]))


@pytest.mark.parametrize('backup,error', [
    ({'data': 'nope'}, 'Invalid backup format'),
    ({'data': {'inventory': {'all': []}, 'orders': [{'customerName': 'No id'}]}}, 'Invalid backup format'),
    ({'data': {'inventory': {'all': [{'id': 'x', 'name': 'X', 'category': 'Rings', 'price': -1}]}}},
     'Invalid backup data: price cannot be negative'),
])
def test_restore_rejects_bad_backups(client, admin_headers, create, backup, error):
    product = create()
    response = client.post('/api/admin/backup', json=backup, headers=admin_headers)
    assert response.status_code == 400
    assert response.get_json()['error'] == error
    assert client.get(f"/api/admin/products/{product['id']}", headers=admin_headers).status_code == 200


def test_restore_needs_super_admin(client, token_for):
    headers = {'Authorization': f"Bearer {token_for('admin')}"}
    assert client.get('/api/admin/backup', headers=headers).status_code == 200
    response = client.post('/api/admin/backup', json={'data': {'inventory': []}}, headers=headers)
    assert response.status_code == 403
