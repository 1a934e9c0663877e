import os
from datetime import datetime, timedelta

import pytest

os.environ['DATABASE_URL'] = 'sqlite://'
os.environ.setdefault('SECRET_KEY', 'chave-de-teste')
os.environ.pop('RESEND_API_KEY', None)

from werkzeug.security import generate_password_hash  # noqa: E402

from main import app as flask_app, db, sincronizar_conquistas, gerar_token, Usuario  # noqa: E402
from tipos import Role  # noqa: E402


@pytest.fixture
def app(tmp_path):
    flask_app.config.update(TESTING=True, UPLOAD_FOLDER=str(tmp_path), RESEND_API_KEY=None)
    with flask_app.app_context():
        db.create_all()
        sincronizar_conquistas()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def criar_usuario(app):
    """Cria um usuário e devolve um dicionário com id, email e cabeçalho de autenticação."""
    def _criar(nome, role=Role.ALUNO, email=None, senha='senha123'):
        email = email or f"{nome.lower().replace(' ', '.')}@teste.com"
        with app.app_context():
            usuario = Usuario(nome=nome, email=email, role=role, password=generate_password_hash(senha))
            db.session.add(usuario)
            db.session.commit()
            return {'id': usuario.id, 'email': email, 'headers': {'x-access-token': gerar_token(usuario)}}
    return _criar


@pytest.fixture
def docente(criar_usuario):
    return criar_usuario('Professora Thaísa', Role.DOCENTE)


@pytest.fixture
def aluno(criar_usuario):
    return criar_usuario('Ana Souza')


def questao_unica(enunciado, dificuldade='MEDIO', tags=None):
    return {
        'enunciado': enunciado,
        'tipo': 'MULTIPLA_ESCOLHA_UNICA',
        'dificuldade': dificuldade,
        'tags': tags or [],
        'alternativas': [
            {'texto': 'Alternativa correta', 'correta': True},
            {'texto': 'Alternativa errada', 'correta': False},
            {'texto': 'Outra alternativa errada', 'correta': False},
        ],
    }


@pytest.fixture
def simulado(client, docente):
    """Simulado com 10 questões fáceis, 10 médias e 10 difíceis, nessa ordem de criação."""
    resp = client.post('/api/v1/simulados', headers=docente['headers'],
                       json={'nome': 'Português', 'categoria': 'Língua Portuguesa'})
    assert resp.status_code == 201
    simulado_id = resp.get_json()['id']

    questoes = [questao_unica(f'Questão {d} número {i}', d)
                for d in ('FACIL', 'MEDIO', 'DIFICIL') for i in range(1, 11)]
    resp = client.post(f'/api/v1/simulados/{simulado_id}/questoes/importar',
                       headers=docente['headers'], json={'questoes': questoes})
    assert resp.status_code == 201
    return simulado_id


@pytest.fixture
def prova_publicada(client, docente, aluno, simulado):
    """Prova de 10 questões publicada e atribuída a uma turma em que o aluno está matriculado."""
    resp = client.post(f'/api/v1/simulados/{simulado}/gerar-provas', headers=docente['headers'], json={
        'questoes_por_prova': 10, 'embaralhar': False, 'embaralhar_questoes': False,
        'embaralhar_alternativas': False, 'nota_minima': 70,
    })
    assert resp.status_code == 201
    prova_id = resp.get_json()['provas'][0]['id']

    resp = client.post(f'/api/v1/provas/{prova_id}/publicar', headers=docente['headers'])
    assert resp.status_code == 200

    resp = client.post('/api/v1/turmas', headers=docente['headers'], json={'nome': 'Turma A'})
    turma = resp.get_json()
    resp = client.post('/api/v1/turmas/entrar', headers=aluno['headers'], json={'codigo': turma['codigo']})
    assert resp.status_code == 201

    agora = datetime.utcnow()
    resp = client.post(f"/api/v1/turmas/{turma['id']}/provas", headers=docente['headers'], json={
        'prova_id': prova_id,
        'data_inicio': (agora - timedelta(days=1)).strftime('%Y-%m-%dT%H:%M:%S'),
        'data_fim': (agora + timedelta(days=1)).strftime('%Y-%m-%dT%H:%M:%S'),
    })
    assert resp.status_code == 201
    return prova_id
