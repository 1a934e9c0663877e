import io
import random
from datetime import datetime, timedelta

import jwt
import pytest
from PIL import Image

import main
from main import db, EventoXP, PerfilGamificacao, Notificacao, Tentativa, AuditLog
from gamificacao import calcular_nivel
from tipos import Role

MEIO_DIA = datetime.utcnow().replace(hour=12, minute=0, second=0, microsecond=0)


@pytest.fixture
def relogio(monkeypatch):
    """Congela o relógio do app; `relogio.avancar(...)` move o horário."""
    class Relogio:
        agora = MEIO_DIA

        def avancar(self, **delta):
            self.agora = self.agora + timedelta(**delta)

    r = Relogio()
    monkeypatch.setattr(main, 'agora', lambda: r.agora)
    return r


def iniciar(client, aluno, prova_id):
    resp = client.post(f'/api/v1/aluno/provas/{prova_id}/iniciar', headers=aluno['headers'])
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()


def responder(client, aluno, tentativa, acertos):
    """Responde as questões na ordem exibida: as `acertos` primeiras corretamente."""
    for i, questao in enumerate(tentativa['questoes']):
        alvo = 'Alternativa correta' if i < acertos else 'Alternativa errada'
        alternativa = next(a for a in questao['alternativas'] if a['texto'] == alvo)
        resp = client.post(f"/api/v1/aluno/tentativas/{tentativa['id']}/responder", headers=aluno['headers'],
                           json={'prova_questao_id': questao['prova_questao_id'],
                                 'resposta': {'alternativaId': alternativa['id']}})
        assert resp.status_code == 200, resp.get_json()


def submeter(client, aluno, tentativa_id):
    return client.post(f'/api/v1/aluno/tentativas/{tentativa_id}/submeter', headers=aluno['headers'])


# --- Autenticação e autorização ---

def test_login_retorna_token_valido(client, docente):
    resp = client.post('/api/v1/login', json={'email': docente['email'], 'password': 'senha123'})
    assert resp.status_code == 200
    token = resp.get_json()['token']

    perfil = client.get('/api/v1/perfil', headers={'Authorization': f'Bearer {token}'})
    assert perfil.status_code == 200
    assert perfil.get_json()['role'] == 'DOCENTE'


def test_login_com_senha_errada(client, app, docente):
    resp = client.post('/api/v1/login', json={'email': docente['email'], 'password': 'errada'})
    assert resp.status_code == 401
    assert resp.get_json()['tipo'] == 'UNAUTHORIZED'
    with app.app_context():
        assert AuditLog.query.filter_by(action='LOGIN_FAILED').count() == 1


def test_requisicao_sem_token_e_token_expirado(client, app, docente):
    resp = client.get('/api/v1/perfil')
    assert resp.status_code == 401
    assert resp.get_json()['tipo'] == 'UNAUTHORIZED'

    expirado = jwt.encode({'id': docente['id'], 'exp': datetime.utcnow() - timedelta(minutes=1)},
                          app.config['SECRET_KEY'], algorithm='HS256')
    resp = client.get('/api/v1/perfil', headers={'x-access-token': expirado})
    assert resp.status_code == 401


def test_aluno_nao_pode_criar_simulado(client, aluno):
    resp = client.post('/api/v1/simulados', headers=aluno['headers'], json={'nome': 'X', 'categoria': 'Y'})
    assert resp.status_code == 403
    assert resp.get_json()['tipo'] == 'FORBIDDEN'


def test_docente_nao_gerencia_simulado_de_outro(client, criar_usuario, simulado):
    outro = criar_usuario('Outro Docente', Role.DOCENTE)
    assert client.get(f'/api/v1/simulados/{simulado}', headers=outro['headers']).status_code == 403
    assert client.delete(f'/api/v1/simulados/{simulado}', headers=outro['headers']).status_code == 403

    admin = criar_usuario('Admin', Role.SUPERADMIN)
    assert client.get(f'/api/v1/simulados/{simulado}', headers=admin['headers']).status_code == 200


def test_registro_e_email_duplicado(client):
    dados = {'nome': 'Carlos', 'email': 'carlos@teste.com', 'password': 'segredo1'}
    resp = client.post('/api/v1/registrar', json=dados)
    assert resp.status_code == 201
    assert resp.get_json()['usuario']['role'] == 'ALUNO'

    resp = client.post('/api/v1/registrar', json=dados)
    assert resp.status_code == 409


def test_trocar_senha(client, app, aluno):
    url = '/api/v1/perfil/senha'
    resp = client.post(url, headers=aluno['headers'],
                       json={'senha_atual': 'errada', 'password': 'nova123', 'confirm_password': 'nova123'})
    assert resp.status_code == 400
    assert 'senha_atual' in resp.get_json()['campos']

    resp = client.post(url, headers=aluno['headers'],
                       json={'senha_atual': 'senha123', 'password': 'nova123', 'confirm_password': 'outra123'})
    assert resp.status_code == 400
    assert resp.get_json()['campos']['confirm_password'] == ['As senhas devem ser iguais.']

    resp = client.post(url, headers=aluno['headers'],
                       json={'senha_atual': 'senha123', 'password': 'senha123', 'confirm_password': 'senha123'})
    assert resp.status_code == 400

    resp = client.post(url, headers=aluno['headers'],
                       json={'senha_atual': 'senha123', 'password': 'nova123', 'confirm_password': 'nova123'})
    assert resp.status_code == 200

    login = client.post('/api/v1/login', json={'email': aluno['email'], 'password': 'senha123'})
    assert login.status_code == 401
    login = client.post('/api/v1/login', json={'email': aluno['email'], 'password': 'nova123'})
    assert login.status_code == 200
    with app.app_context():
        assert AuditLog.query.filter_by(action='PASSWORD_CHANGED').count() == 1


# --- Simulados e questões ---

def test_simulado_contagem_por_dificuldade(client, docente, simulado):
    resp = client.get(f'/api/v1/simulados/{simulado}', headers=docente['headers'])
    assert resp.status_code == 200
    dados = resp.get_json()
    assert dados['total_questoes'] == 30
    assert dados['questoes_por_dificuldade'] == {'FACIL': 10, 'MEDIO': 10, 'DIFICIL': 10}


def test_filtros_da_listagem(client, docente, simulado):
    resp = client.get(f'/api/v1/simulados/{simulado}/questoes?dificuldade=DIFICIL', headers=docente['headers'])
    assert resp.get_json()['total'] == 10

    resp = client.get(f'/api/v1/simulados/{simulado}/questoes?dificuldade=ALTA', headers=docente['headers'])
    assert resp.status_code == 400
    corpo = resp.get_json()
    assert corpo['tipo'] == 'VALIDATION_FAILED'
    assert corpo['campo'] == 'dificuldade'
    assert set(corpo['permitidos']) == {'FACIL', 'MEDIO', 'DIFICIL'}

    resp = client.get(f'/api/v1/simulados/{simulado}/questoes?tipo=DISSERTATIVA', headers=docente['headers'])
    assert resp.status_code == 400

    resp = client.get('/api/v1/simulados?status=XYZ', headers=docente['headers'])
    assert resp.status_code == 400
    assert resp.get_json()['tipo'] == 'VALIDATION_FAILED'

    resp = client.get(f'/api/v1/simulados/{simulado}/provas?status=ARQUIVADA', headers=docente['headers'])
    assert resp.status_code == 400
    resp = client.get(f'/api/v1/simulados/{simulado}/provas?status=RASCUNHO', headers=docente['headers'])
    assert resp.status_code == 200


def test_questao_unica_exige_uma_alternativa_correta(client, docente, simulado):
    payload = {
        'enunciado': 'Qual alternativa está correta?',
        'tipo': 'MULTIPLA_ESCOLHA_UNICA',
        'alternativas': [{'texto': 'A', 'correta': True}, {'texto': 'B', 'correta': True}],
    }
    resp = client.post(f'/api/v1/simulados/{simulado}/questoes', headers=docente['headers'], json=payload)
    assert resp.status_code == 400
    corpo = resp.get_json()
    assert corpo['tipo'] == 'VALIDATION_FAILED'
    assert '_form' in corpo['campos']


def test_questao_lacuna_exige_configuracao(client, docente, simulado):
    payload = {'enunciado': 'Complete a frase.', 'tipo': 'LACUNA'}
    resp = client.post(f'/api/v1/simulados/{simulado}/questoes', headers=docente['headers'], json=payload)
    assert resp.status_code == 400

    payload['configuracao'] = {'texto': 'Eu [LACUNA_1] aqui.', 'lacunas': [{'id': 'a', 'respostasAceitas': ['moro']}]}
    resp = client.post(f'/api/v1/simulados/{simulado}/questoes', headers=docente['headers'], json=payload)
    assert resp.status_code == 201
    assert resp.get_json()['configuracao']['lacunas'][0]['respostasAceitas'] == ['moro']


def test_importacao_invalida_nao_grava_nada(client, docente, simulado):
    itens = [{'enunciado': 'Questão válida aqui', 'tipo': 'COMANDO', 'configuracao': {'respostasAceitas': ['ls']}},
             {'enunciado': 'x'}]
    resp = client.post(f'/api/v1/simulados/{simulado}/questoes/importar', headers=docente['headers'],
                       json={'questoes': itens})
    assert resp.status_code == 400
    assert resp.get_json()['indice'] == 1

    total = client.get(f'/api/v1/simulados/{simulado}/questoes', headers=docente['headers']).get_json()['total']
    assert total == 30


def test_reordenar_com_id_invalido_nao_altera_nada(client, docente, simulado):
    questoes = client.get(f'/api/v1/simulados/{simulado}/questoes', headers=docente['headers']).get_json()['questoes']
    itens = [{'id': questoes[0]['id'], 'ordem': 99}, {'id': 999999, 'ordem': 1}]
    resp = client.post('/api/v1/questoes/reordenar', headers=docente['headers'], json={'itens': itens})
    assert resp.status_code == 404

    questao = client.get(f"/api/v1/questoes/{questoes[0]['id']}", headers=docente['headers']).get_json()
    assert questao['ordem'] == questoes[0]['ordem']

    resp = client.post('/api/v1/questoes/reordenar', headers=docente['headers'],
                       json={'itens': [{'id': questoes[0]['id'], 'ordem': 99}]})
    assert resp.status_code == 200
    questao = client.get(f"/api/v1/questoes/{questoes[0]['id']}", headers=docente['headers']).get_json()
    assert questao['ordem'] == 99


def test_upload_de_imagem(client, docente, app):
    buffer = io.BytesIO()
    Image.new('RGB', (4, 4), color='red').save(buffer, 'PNG')
    buffer.seek(0)
    resp = client.post('/api/v1/upload', headers=docente['headers'],
                       data={'arquivo': (buffer, 'figura.png')}, content_type='multipart/form-data')
    assert resp.status_code == 201
    url = resp.get_json()['url']
    assert url.startswith('/uploads/questoes/') and url.endswith('.png')
    assert client.get(url).status_code == 200

    resp = client.post('/api/v1/upload', headers=docente['headers'],
                       data={'arquivo': (io.BytesIO(b'isto nao e uma imagem'), 'falsa.png')},
                       content_type='multipart/form-data')
    assert resp.status_code == 400


# --- Geração e publicação de provas ---

def test_gerar_prova_estratificada(client, docente, simulado):
    resp = client.post(f'/api/v1/simulados/{simulado}/gerar-provas', headers=docente['headers'], json={
        'questoes_por_prova': 10, 'percentual_facil': 50, 'percentual_medio': 30, 'percentual_dificil': 20,
        'embaralhar': False,
    })
    assert resp.status_code == 201
    prova = resp.get_json()['provas'][0]
    assert prova['status'] == 'RASCUNHO'
    assert prova['codigo'] == f'LNGU-{MEIO_DIA.year}-001'

    detalhes = client.get(f"/api/v1/provas/{prova['id']}", headers=docente['headers']).get_json()
    dificuldades = [q['dificuldade'] for q in detalhes['questoes']]
    assert dificuldades == ['FACIL'] * 5 + ['MEDIO'] * 3 + ['DIFICIL'] * 2
    assert [q['enunciado'] for q in detalhes['questoes'][:2]] == ['Questão FACIL número 1', 'Questão FACIL número 2']


def test_gerar_provas_com_percentuais_invalidos(client, docente, simulado):
    resp = client.post(f'/api/v1/simulados/{simulado}/gerar-provas', headers=docente['headers'], json={
        'questoes_por_prova': 10, 'percentual_facil': 50, 'percentual_medio': 30, 'percentual_dificil': 10,
    })
    assert resp.status_code == 400
    assert resp.get_json()['tipo'] == 'VALIDATION_FAILED'


def test_gerar_provas_com_percentual_fracionario(client, docente, simulado):
    resp = client.post(f'/api/v1/simulados/{simulado}/gerar-provas', headers=docente['headers'], json={
        'questoes_por_prova': 10, 'percentual_facil': 50.5, 'percentual_medio': 30, 'percentual_dificil': 20,
    })
    assert resp.status_code == 400
    assert resp.get_json()['tipo'] == 'VALIDATION_FAILED'

    provas = client.get(f'/api/v1/simulados/{simulado}/provas', headers=docente['headers']).get_json()['provas']
    assert provas == []


def test_gerar_varias_provas_disjuntas_e_repeticao(client, docente, simulado):
    resp = client.post(f'/api/v1/simulados/{simulado}/gerar-provas', headers=docente['headers'],
                       json={'questoes_por_prova': 10, 'quantidade_provas': 3})
    assert resp.status_code == 201
    corpo = resp.get_json()
    assert corpo['reutilizou_questoes'] is False
    ids = []
    for prova in corpo['provas']:
        detalhes = client.get(f"/api/v1/provas/{prova['id']}", headers=docente['headers']).get_json()
        ids.extend(q['id'] for q in detalhes['questoes'])
    assert len(ids) == len(set(ids)) == 30

    resp = client.post(f'/api/v1/simulados/{simulado}/gerar-provas', headers=docente['headers'],
                       json={'questoes_por_prova': 10, 'quantidade_provas': 4})
    assert resp.status_code == 422
    assert resp.get_json()['tipo'] == 'INSUFFICIENT_QUESTIONS'

    resp = client.post(f'/api/v1/simulados/{simulado}/gerar-provas', headers=docente['headers'],
                       json={'questoes_por_prova': 10, 'quantidade_provas': 4, 'permitir_repeticao': True})
    assert resp.status_code == 201
    assert resp.get_json()['reutilizou_questoes'] is True


def test_preview_geracao(client, docente, simulado):
    resp = client.post(f'/api/v1/simulados/{simulado}/preview-geracao', headers=docente['headers'], json={
        'questoes_por_prova': 10, 'percentual_facil': 50, 'percentual_medio': 30, 'percentual_dificil': 20,
        'quantidade_provas': 2,
    })
    assert resp.status_code == 200
    preview = resp.get_json()
    assert preview['metas'] == {'FACIL': 5, 'MEDIO': 3, 'DIFICIL': 2}
    assert preview['provas_possiveis'] == 2
    assert preview['suficiente'] is True


def test_publicacao_exige_dez_questoes(client, docente, simulado):
    resp = client.post(f'/api/v1/simulados/{simulado}/gerar-provas', headers=docente['headers'],
                       json={'questoes_por_prova': 10, 'embaralhar': False})
    prova_id = resp.get_json()['provas'][0]['id']
    questoes = client.get(f'/api/v1/simulados/{simulado}/questoes', headers=docente['headers']).get_json()['questoes']
    ids = [q['id'] for q in questoes]

    resp = client.put(f'/api/v1/provas/{prova_id}/questoes', headers=docente['headers'], json={'questoes': ids[:9]})
    assert resp.status_code == 200
    resp = client.post(f'/api/v1/provas/{prova_id}/publicar', headers=docente['headers'])
    assert resp.status_code == 400
    assert resp.get_json()['tipo'] == 'VALIDATION_FAILED'

    resp = client.put(f'/api/v1/provas/{prova_id}/questoes', headers=docente['headers'],
                      json={'questoes': list(reversed(ids[:10]))})
    assert [q['id'] for q in resp.get_json()['questoes']] == list(reversed(ids[:10]))
    resp = client.post(f'/api/v1/provas/{prova_id}/publicar', headers=docente['headers'])
    assert resp.status_code == 200
    assert resp.get_json()['status'] == 'PUBLICADA'

    # publicada -> publicada não é permitido; publicada -> encerrada é, e é definitivo
    assert client.post(f'/api/v1/provas/{prova_id}/publicar', headers=docente['headers']).status_code == 409
    assert client.post(f'/api/v1/provas/{prova_id}/encerrar', headers=docente['headers']).status_code == 200
    resp = client.post(f'/api/v1/provas/{prova_id}/encerrar', headers=docente['headers'])
    assert resp.status_code == 409
    assert resp.get_json()['tipo'] == 'INVALID_EXAM_STATE'


def test_questoes_de_prova_publicada_saem_do_pool(client, docente, simulado, prova_publicada):
    resp = client.post(f'/api/v1/simulados/{simulado}/preview-geracao', headers=docente['headers'],
                       json={'questoes_por_prova': 10})
    assert resp.get_json()['questoes_disponiveis'] == 20


def test_excluir_questao_em_uso(client, docente, prova_publicada):
    prova = client.get(f'/api/v1/provas/{prova_publicada}', headers=docente['headers']).get_json()
    questao_id = prova['questoes'][0]['id']
    resp = client.delete(f'/api/v1/questoes/{questao_id}', headers=docente['headers'])
    assert resp.status_code == 409
    assert resp.get_json()['tipo'] == 'CONFLICT'


# --- Tentativas ---

def test_fluxo_completo_da_tentativa(client, app, aluno, prova_publicada, relogio):
    tentativa = iniciar(client, aluno, prova_publicada)
    assert tentativa['numero'] == 1
    assert len(tentativa['questoes']) == 10
    assert all('correta' not in a for q in tentativa['questoes'] for a in q['alternativas'])

    responder(client, aluno, tentativa, acertos=7)
    resp = submeter(client, aluno, tentativa['id'])
    assert resp.status_code == 200
    corpo = resp.get_json()
    assert corpo['tentativa']['nota'] == 70.0
    assert corpo['tentativa']['aprovado'] is True
    assert corpo['tentativa']['total_acertos'] == 7

    gamificacao = corpo['gamificacao']
    assert gamificacao['xp_ganho'] == 305
    assert gamificacao['subiu_nivel'] is True
    assert gamificacao['nivel'] == 2
    assert {c['codigo'] for c in gamificacao['novas_conquistas']} == {
        'primeira_prova', 'aprovado', 'veloz', 'relampago', 'pontual'}

    with app.app_context():
        perfil = PerfilGamificacao.query.filter_by(usuario_id=aluno['id']).one()
        assert perfil.xp == 305
        assert perfil.nivel == 2
        assert perfil.acertos_seguidos == 7
        assert sum(e.quantidade for e in EventoXP.query.filter_by(usuario_id=aluno['id'])) == 305
        tipos = {n.tipo.value for n in Notificacao.query.filter_by(usuario_id=aluno['id'])}
        assert {'NOVA_PROVA', 'RESULTADO_DISPONIVEL', 'SISTEMA', 'TURMA'} <= tipos

    resultado = client.get(f"/api/v1/aluno/tentativas/{tentativa['id']}/resultado", headers=aluno['headers'])
    assert resultado.status_code == 200
    assert sum(1 for q in resultado.get_json()['questoes'] if q['correta']) == 7


def test_embaralhar_questoes_vale_por_tentativa(client, docente, aluno, prova_publicada, relogio):
    resp = client.put(f'/api/v1/provas/{prova_publicada}', headers=docente['headers'],
                      json={'embaralhar_questoes': True})
    assert resp.get_json()['embaralhar_questoes'] is True

    # a ordem gravada na prova não muda; só a tentativa é embaralhada
    detalhes = client.get(f'/api/v1/provas/{prova_publicada}', headers=docente['headers']).get_json()
    assert [q['ordem'] for q in detalhes['questoes']] == list(range(1, 11))
    gravada = [q['prova_questao_id'] for q in detalhes['questoes']]

    tentativa = iniciar(client, aluno, prova_publicada)
    esperada = list(gravada)
    random.Random(tentativa['id']).shuffle(esperada)
    assert [q['prova_questao_id'] for q in tentativa['questoes']] == esperada


def test_docente_acompanha_tentativas(client, docente, aluno, criar_usuario, prova_publicada, relogio):
    tentativa = iniciar(client, aluno, prova_publicada)
    responder(client, aluno, tentativa, acertos=7)
    submeter(client, aluno, tentativa['id'])

    resp = client.get(f'/api/v1/provas/{prova_publicada}/tentativas', headers=docente['headers'])
    assert resp.status_code == 200
    tentativas = resp.get_json()['tentativas']
    assert len(tentativas) == 1
    assert tentativas[0]['aluno']['email'] == aluno['email']
    assert tentativas[0]['nota'] == 70.0

    resp = client.get(f"/api/v1/tentativas/{tentativa['id']}", headers=docente['headers'])
    assert resp.status_code == 200
    corpo = resp.get_json()
    assert corpo['aluno']['nome'] == 'Ana Souza'
    assert corpo['prova']['id'] == prova_publicada
    assert len(corpo['questoes']) == 10
    assert sum(1 for q in corpo['questoes'] if q['correta']) == 7

    outro = criar_usuario('Outro Docente', Role.DOCENTE)
    assert client.get(f'/api/v1/provas/{prova_publicada}/tentativas', headers=outro['headers']).status_code == 403
    assert client.get(f"/api/v1/tentativas/{tentativa['id']}", headers=outro['headers']).status_code == 403
    assert client.get(f"/api/v1/tentativas/{tentativa['id']}", headers=aluno['headers']).status_code == 403
    assert client.get('/api/v1/tentativas/999999', headers=docente['headers']).status_code == 404


def test_feedback_do_docente(client, app, docente, aluno, prova_publicada, relogio):
    tentativa = iniciar(client, aluno, prova_publicada)
    responder(client, aluno, tentativa, acertos=5)
    questao = tentativa['questoes'][7]
    payload = {'prova_questao_id': questao['prova_questao_id'], 'feedback': 'Revise o capítulo 3.'}

    resp = client.post(f"/api/v1/tentativas/{tentativa['id']}/feedback", headers=docente['headers'], json=payload)
    assert resp.status_code == 409

    submeter(client, aluno, tentativa['id'])
    resp = client.post(f"/api/v1/tentativas/{tentativa['id']}/feedback", headers=docente['headers'],
                       json={'prova_questao_id': questao['prova_questao_id'], 'feedback': ''})
    assert resp.status_code == 400
    resp = client.post(f"/api/v1/tentativas/{tentativa['id']}/feedback", headers=docente['headers'],
                       json={'prova_questao_id': 999999, 'feedback': 'Texto'})
    assert resp.status_code == 404

    resp = client.post(f"/api/v1/tentativas/{tentativa['id']}/feedback", headers=docente['headers'], json=payload)
    assert resp.status_code == 200
    assert resp.get_json()['feedback_docente'] == 'Revise o capítulo 3.'

    resultado = client.get(f"/api/v1/aluno/tentativas/{tentativa['id']}/resultado", headers=aluno['headers'])
    com_feedback = [q for q in resultado.get_json()['questoes'] if q['feedback_docente']]
    assert [q['prova_questao_id'] for q in com_feedback] == [questao['prova_questao_id']]
    assert com_feedback[0]['feedback_em'] is not None
    with app.app_context():
        assert Notificacao.query.filter_by(usuario_id=aluno['id'], titulo='Novo feedback do professor').count() == 1

    resp = client.delete(f"/api/v1/tentativas/{tentativa['id']}/feedback/{questao['prova_questao_id']}",
                         headers=docente['headers'])
    assert resp.status_code == 200
    corpo = client.get(f"/api/v1/tentativas/{tentativa['id']}", headers=docente['headers']).get_json()
    assert all(q['feedback_docente'] is None for q in corpo['questoes'])


def test_submissao_dupla_gera_conflito(client, app, aluno, prova_publicada, relogio):
    tentativa = iniciar(client, aluno, prova_publicada)
    responder(client, aluno, tentativa, acertos=10)
    assert submeter(client, aluno, tentativa['id']).status_code == 200

    resp = submeter(client, aluno, tentativa['id'])
    assert resp.status_code == 409
    assert resp.get_json()['tipo'] == 'CONFLICT'

    with app.app_context():
        # a premiação não foi aplicada duas vezes
        assert EventoXP.query.filter_by(motivo='completar_prova').count() == 1
        assert db.session.get(Tentativa, tentativa['id']).nota == 100.0


def test_nao_inicia_segunda_tentativa_em_andamento(client, aluno, prova_publicada, relogio):
    tentativa = iniciar(client, aluno, prova_publicada)
    resp = client.post(f'/api/v1/aluno/provas/{prova_publicada}/iniciar', headers=aluno['headers'])
    assert resp.status_code == 409
    assert resp.get_json()['tentativa_id'] == tentativa['id']


def test_aluno_fora_da_turma_nao_inicia(client, criar_usuario, prova_publicada):
    intruso = criar_usuario('Intruso')
    resp = client.post(f'/api/v1/aluno/provas/{prova_publicada}/iniciar', headers=intruso['headers'])
    assert resp.status_code == 403


def test_limite_e_intervalo_de_tentativas(client, docente, aluno, prova_publicada, relogio):
    resp = client.put(f'/api/v1/provas/{prova_publicada}', headers=docente['headers'],
                      json={'tentativas_max': 2, 'intervalo_tentativas': 1})
    assert resp.status_code == 200

    primeira = iniciar(client, aluno, prova_publicada)
    submeter(client, aluno, primeira['id'])

    resp = client.post(f'/api/v1/aluno/provas/{prova_publicada}/iniciar', headers=aluno['headers'])
    assert resp.status_code == 409
    assert 'proxima_disponivel' in resp.get_json()

    relogio.avancar(hours=1)
    segunda = iniciar(client, aluno, prova_publicada)
    assert segunda['numero'] == 2
    submeter(client, aluno, segunda['id'])

    relogio.avancar(hours=2)
    resp = client.post(f'/api/v1/aluno/provas/{prova_publicada}/iniciar', headers=aluno['headers'])
    assert resp.status_code == 409
    assert resp.get_json()['tentativas_max'] == 2


def test_resposta_apos_tempo_limite(client, app, aluno, prova_publicada, relogio):
    tentativa = iniciar(client, aluno, prova_publicada)
    responder(client, aluno, {'id': tentativa['id'], 'questoes': tentativa['questoes'][:3]}, acertos=3)

    relogio.avancar(minutes=61)
    questao = tentativa['questoes'][3]
    resp = client.post(f"/api/v1/aluno/tentativas/{tentativa['id']}/responder", headers=aluno['headers'],
                       json={'prova_questao_id': questao['prova_questao_id'],
                             'resposta': {'alternativaId': questao['alternativas'][0]['id']}})
    assert resp.status_code == 409

    corpo = submeter(client, aluno, tentativa['id']).get_json()
    assert corpo['tentativa']['nota'] == 30.0
    assert corpo['tentativa']['tempo_gasto'] == 60 * 60


def test_nota_final_considera_maior_nota(client, aluno, prova_publicada, relogio):
    ids = []
    for acertos in (6, 9, 9):
        tentativa = iniciar(client, aluno, prova_publicada)
        responder(client, aluno, tentativa, acertos=acertos)
        submeter(client, aluno, tentativa['id'])
        ids.append(tentativa['id'])
        relogio.avancar(minutes=5)

    resp = client.get(f'/api/v1/aluno/provas/{prova_publicada}/nota-final', headers=aluno['headers'])
    corpo = resp.get_json()
    assert corpo['nota'] == 90.0
    assert corpo['tentativa_id'] == ids[1]
    assert corpo['tentativas_submetidas'] == 3


def test_resultado_oculto_ate_a_data(client, docente, aluno, prova_publicada, relogio):
    liberacao = (MEIO_DIA + timedelta(days=2)).strftime('%Y-%m-%dT%H:%M:%S')
    resp = client.put(f'/api/v1/provas/{prova_publicada}', headers=docente['headers'],
                      json={'mostrar_resultado': 'DATA', 'data_resultado': liberacao})
    assert resp.status_code == 200

    tentativa = iniciar(client, aluno, prova_publicada)
    responder(client, aluno, tentativa, acertos=8)
    corpo = submeter(client, aluno, tentativa['id']).get_json()
    assert corpo['resultado_disponivel'] is False
    assert 'nota' not in corpo['tentativa']

    resp = client.get(f"/api/v1/aluno/tentativas/{tentativa['id']}/resultado", headers=aluno['headers'])
    assert resp.get_json() == {'resultado_disponivel': False, 'data_resultado': liberacao}

    relogio.avancar(days=3)
    resp = client.get(f"/api/v1/aluno/tentativas/{tentativa['id']}/resultado", headers=aluno['headers'])
    assert resp.get_json()['tentativa']['nota'] == 80.0


# --- Certificados ---

def test_certificado_emitido_uma_vez_e_validado(client, aluno, prova_publicada, relogio):
    tentativa = iniciar(client, aluno, prova_publicada)
    responder(client, aluno, tentativa, acertos=8)
    submeter(client, aluno, tentativa['id'])

    resp = client.get(f"/api/v1/certificados/{tentativa['id']}", headers=aluno['headers'])
    assert resp.status_code == 201
    codigo = resp.get_json()['codigo']
    assert len(codigo) == 12 and codigo == codigo.upper()

    resp = client.get(f"/api/v1/certificados/{tentativa['id']}", headers=aluno['headers'])
    assert resp.status_code == 200
    assert resp.get_json()['codigo'] == codigo

    validacao = client.get(f'/api/v1/certificados/validar/{codigo.lower()}').get_json()
    assert validacao['valido'] is True
    assert validacao['certificado']['nota'] == 80.0

    assert client.get('/api/v1/certificados/validar/000000000000').status_code == 404


def test_certificado_negado_para_reprovado(client, aluno, prova_publicada, relogio):
    tentativa = iniciar(client, aluno, prova_publicada)
    responder(client, aluno, tentativa, acertos=5)
    submeter(client, aluno, tentativa['id'])

    resp = client.get(f"/api/v1/certificados/{tentativa['id']}", headers=aluno['headers'])
    assert resp.status_code == 409


# --- Gamificação ---

def _evento(usuario_id, quantidade, dias_atras):
    db.session.add(EventoXP(usuario_id=usuario_id, quantidade=quantidade, motivo='completar_prova',
                            criado_em=datetime.utcnow() - timedelta(days=dias_atras)))


def test_leaderboard_periodo_e_total(client, app, criar_usuario):
    recente = criar_usuario('Recente')
    antigo = criar_usuario('Antigo')
    parado = criar_usuario('Sem XP')
    with app.app_context():
        _evento(recente['id'], 100, dias_atras=2)
        _evento(antigo['id'], 500, dias_atras=40)
        db.session.add(PerfilGamificacao(usuario_id=recente['id'], xp=100, xp_atualizado_em=datetime.utcnow()))
        db.session.add(PerfilGamificacao(usuario_id=antigo['id'], xp=500, xp_atualizado_em=datetime.utcnow()))
        db.session.commit()

    resp = client.get('/api/v1/gamificacao/leaderboard?periodo=30', headers=antigo['headers'])
    corpo = resp.get_json()
    assert corpo['escopo'] == 'periodo'
    assert [r['usuario_id'] for r in corpo['ranking']] == [recente['id']]
    assert corpo['minha_posicao'] is None

    resp = client.get('/api/v1/gamificacao/leaderboard?escopo=total', headers=parado['headers'])
    corpo = resp.get_json()
    assert [r['usuario_id'] for r in corpo['ranking']] == [antigo['id'], recente['id'], parado['id']]
    assert [r['xp'] for r in corpo['ranking']] == [500, 100, 0]
    assert corpo['minha_posicao'] == {'posicao': 3, 'xp': 0}


def test_posicao_fora_do_top(client, app, criar_usuario):
    usuarios = [criar_usuario(f'Aluno {i}') for i in range(4)]
    with app.app_context():
        for i, usuario in enumerate(usuarios):
            _evento(usuario['id'], 100 * (i + 1), dias_atras=1)
        db.session.commit()

    resp = client.get('/api/v1/gamificacao/leaderboard?limit=2', headers=usuarios[0]['headers'])
    corpo = resp.get_json()
    assert len(corpo['ranking']) == 2
    assert corpo['ranking'][0]['usuario_id'] == usuarios[3]['id']
    assert corpo['minha_posicao'] == {'posicao': 4, 'xp': 100}


def test_conquistas_e_perfil(client, aluno, prova_publicada, relogio):
    tentativa = iniciar(client, aluno, prova_publicada)
    responder(client, aluno, tentativa, acertos=10)
    submeter(client, aluno, tentativa['id'])

    conquistas = client.get('/api/v1/gamificacao/conquistas', headers=aluno['headers']).get_json()
    por_codigo = {c['codigo']: c for c in conquistas['conquistas']}
    assert por_codigo['perfeito']['desbloqueada'] is True
    assert por_codigo['sniper']['desbloqueada'] is True
    assert por_codigo['maratonista']['desbloqueada'] is False
    assert por_codigo['maratonista']['progresso_atual'] == 1
    assert por_codigo['maratonista']['progresso'] == 10

    perfil = client.get('/api/v1/gamificacao/me', headers=aluno['headers']).get_json()
    assert perfil['conquistas_desbloqueadas'] == conquistas['desbloqueadas']
    assert perfil['nivel']['nivel'] == calcular_nivel(perfil['xp']).nivel
    assert perfil['posicao_geral'] == 1


# --- Turmas e notificações ---

def test_importar_alunos_cria_contas(client, app, docente, aluno):
    turma = client.post('/api/v1/turmas', headers=docente['headers'], json={'nome': 'Turma B'}).get_json()
    registros = [
        {'nome': 'Novo Aluno', 'email': 'novo@teste.com'},
        {'nome': 'Ana Souza', 'email': aluno['email']},
        {'nome': '', 'email': 'invalido'},
    ]
    resp = client.post(f"/api/v1/turmas/{turma['id']}/importar-alunos", headers=docente['headers'],
                       json={'alunos': registros})
    corpo = resp.get_json()
    assert corpo['criados'] == 1
    assert corpo['matriculados'] == 2
    assert len(corpo['ignorados']) == 1

    detalhes = client.get(f"/api/v1/turmas/{turma['id']}", headers=docente['headers']).get_json()
    assert {a['email'] for a in detalhes['alunos']} == {'novo@teste.com', aluno['email']}

    # a conta criada entra com a senha provisória e precisa trocá-la
    conta = corpo['contas_criadas'][0]
    assert conta['email'] == 'novo@teste.com'
    login = client.post('/api/v1/login', json={'email': conta['email'], 'password': conta['senha_provisoria']})
    assert login.status_code == 200
    assert login.get_json()['usuario']['precisa_trocar_senha'] is True

    headers = {'x-access-token': login.get_json()['token']}
    resp = client.post('/api/v1/perfil/senha', headers=headers, json={
        'senha_atual': conta['senha_provisoria'], 'password': 'minha-senha', 'confirm_password': 'minha-senha'})
    assert resp.status_code == 200
    assert client.get('/api/v1/perfil', headers=headers).get_json()['precisa_trocar_senha'] is False
    with app.app_context():
        assert AuditLog.query.filter_by(action='PASSWORD_CHANGED_FIRST_TIME').count() == 1


def test_importar_alunos_ignora_registro_que_nao_e_objeto(client, docente):
    turma = client.post('/api/v1/turmas', headers=docente['headers'], json={'nome': 'Turma D'}).get_json()
    resp = client.post(f"/api/v1/turmas/{turma['id']}/importar-alunos", headers=docente['headers'],
                       json={'alunos': [{'nome': 'Bia', 'email': 'bia@teste.com'}, 'carlos@teste.com', None]})
    assert resp.status_code == 200
    corpo = resp.get_json()
    assert corpo['criados'] == 1
    assert corpo['ignorados'] == [
        {'registro': 'carlos@teste.com', 'motivo': 'registro inválido'},
        {'registro': None, 'motivo': 'registro inválido'},
    ]


def test_notificacoes_marcar_como_lida(client, docente, aluno):
    turma = client.post('/api/v1/turmas', headers=docente['headers'], json={'nome': 'Turma C'}).get_json()
    client.post('/api/v1/turmas/entrar', headers=aluno['headers'], json={'codigo': turma['codigo']})

    corpo = client.get('/api/v1/notificacoes', headers=aluno['headers']).get_json()
    assert corpo['nao_lidas'] == 1
    notificacao = corpo['notificacoes'][0]
    assert notificacao['tipo'] == 'TURMA'

    resp = client.post(f"/api/v1/notificacoes/{notificacao['id']}/lida", headers=docente['headers'])
    assert resp.status_code == 404
    resp = client.post(f"/api/v1/notificacoes/{notificacao['id']}/lida", headers=aluno['headers'])
    assert resp.get_json()['lida'] is True
    assert client.get('/api/v1/notificacoes', headers=aluno['headers']).get_json()['nao_lidas'] == 0
